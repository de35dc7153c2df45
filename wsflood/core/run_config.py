#!/usr/bin/env python3
"""
wsflood/core/run_config.py - Run file loading
YAML run files parsed with pyyaml, structure validated with pydantic models and
converted into immutable scenario, flow and threshold objects
"""

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError

from wsflood.core.base_classes import (
    ConnectionParams, ExecutorMode, Flow, HoldPolicy, ScenarioConfig, SendMode, Stage
)
from wsflood.core.context import RunOptions
from wsflood.core.errors import ConfigError
from wsflood.core.flows import customize_flow, get_builtin_flow, parse_flow_kind
from wsflood.metrics.thresholds import ThresholdSpec, parse_threshold

logger = logging.getLogger(__name__)

TOKEN_ENV_VAR = "WSFLOOD_TOKEN"

DurationValue = Union[float, str]

EXECUTORS = {
    "constant-vus": ExecutorMode.CONSTANT_CONCURRENCY,
    "constant_concurrency": ExecutorMode.CONSTANT_CONCURRENCY,
    "ramping-arrival-rate": ExecutorMode.RAMPING_ARRIVAL_RATE,
    "ramping_arrival_rate": ExecutorMode.RAMPING_ARRIVAL_RATE,
    "ramping-vus": ExecutorMode.RAMPING_CONCURRENCY,
    "ramping_concurrency": ExecutorMode.RAMPING_CONCURRENCY,
}

_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: DurationValue) -> float:
    """Seconds from a number or a k6-style string like '200ms', '10s', '1m30s'"""
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip().replace(" ", "")
    if not text:
        raise ConfigError("empty duration")
    try:
        return float(text)
    except ValueError:
        pass

    position = 0
    total = 0.0
    for match in _DURATION_PART_RE.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position != len(text):
        raise ConfigError(f"invalid duration '{value}'")
    return total


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid")


class TargetSpec(_Strict):
    url: str
    token: Optional[str] = None
    token_param: Optional[str] = "token"
    headers: Dict[str, str] = {}
    variables: Dict[str, Any] = {}
    connect_timeout: DurationValue = 10.0
    close_timeout: DurationValue = 5.0
    health_url: Optional[str] = None


class OptionsSpec(_Strict):
    tick_interval: DurationValue = 0.05
    abort_grace: DurationValue = 10.0
    evaluation_interval: Optional[DurationValue] = None
    seed: Optional[int] = None


class HoldSpec(_Strict):
    min: DurationValue
    max: Optional[DurationValue] = None


class FlowSpec(_Strict):
    kind: str
    hold: Optional[Union[HoldSpec, DurationValue]] = None
    messages: Optional[List[Any]] = None
    count: Optional[int] = None
    interval: Optional[DurationValue] = None
    mode: Optional[str] = None


class StageSpec(_Strict):
    target: float
    duration: DurationValue


class ScenarioSpec(_Strict):
    executor: str
    flow: str
    vus: Optional[int] = None
    duration: Optional[DurationValue] = None
    start_rate: Optional[float] = None
    start_vus: Optional[float] = None
    time_unit: DurationValue = 1.0
    pre_allocated_vus: Optional[int] = None
    max_vus: Optional[int] = None
    pool_limit: Optional[int] = None
    stages: List[StageSpec] = []
    start_time: DurationValue = 0.0
    graceful_stop: DurationValue = 30.0


class ThresholdEntry(_Strict):
    threshold: str
    abort_on_fail: bool = False


class RunFile(_Strict):
    target: TargetSpec
    options: OptionsSpec = OptionsSpec()
    flows: Dict[str, FlowSpec] = {}
    scenarios: Dict[str, ScenarioSpec]
    thresholds: Dict[str, List[Union[str, ThresholdEntry]]] = {}


@dataclass
class RunConfig:
    """Everything needed to start an Orchestrator"""
    params: ConnectionParams
    scenarios: List[ScenarioConfig]
    thresholds: List[ThresholdSpec] = field(default_factory=list)
    options: RunOptions = field(default_factory=RunOptions)
    health_url: Optional[str] = None
    source: Optional[str] = None


def build_connection_params(target: TargetSpec) -> ConnectionParams:
    """Resolve the token and attach it as bearer header and query parameter"""
    url = os.path.expandvars(target.url)
    token = target.token or os.environ.get(TOKEN_ENV_VAR)
    if token:
        token = os.path.expandvars(token)

    headers = dict(target.headers)
    if token:
        headers.setdefault("Authorization", f"Bearer {token}")
        if target.token_param:
            parts = urlsplit(url)
            query = parse_qsl(parts.query, keep_blank_values=True)
            query.append((target.token_param, token))
            url = urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))

    return ConnectionParams(
        url=url,
        headers=headers,
        variables=dict(target.variables),
        connect_timeout=parse_duration(target.connect_timeout),
        close_timeout=parse_duration(target.close_timeout),
    )


def _build_hold(spec: Union[HoldSpec, DurationValue, None]) -> Optional[HoldPolicy]:
    if spec is None:
        return None
    if isinstance(spec, HoldSpec):
        low = parse_duration(spec.min)
        high = parse_duration(spec.max) if spec.max is not None else low
        return HoldPolicy(low, high)
    return HoldPolicy.fixed(parse_duration(spec))


def build_flow(name: str, spec: FlowSpec) -> Flow:
    mode = None
    if spec.mode is not None:
        try:
            mode = SendMode(spec.mode)
        except ValueError:
            raise ConfigError(f"flow '{name}': unknown send mode '{spec.mode}'")
    return customize_flow(
        name=name,
        kind=parse_flow_kind(spec.kind),
        hold=_build_hold(spec.hold),
        messages=spec.messages,
        count=spec.count,
        interval=parse_duration(spec.interval) if spec.interval is not None else None,
        mode=mode,
    )


def _resolve_flow(name: str, flows: Dict[str, Flow]) -> Flow:
    if name in flows:
        return flows[name]
    return get_builtin_flow(parse_flow_kind(name))


def build_scenario(name: str, spec: ScenarioSpec, flows: Dict[str, Flow]) -> ScenarioConfig:
    """Convert a scenario entry; invariants are left to ScenarioConfig.validate"""
    mode = EXECUTORS.get(spec.executor)
    if mode is None:
        raise ConfigError(f"unknown executor '{spec.executor}' (expected one of: {', '.join(EXECUTORS)})", name)

    if spec.pre_allocated_vus is not None:
        logger.info(f"Scenario '{name}': pre_allocated_vus ignored, sessions are allocated on demand "
                    f"up to the pool limit")

    if mode == ExecutorMode.RAMPING_ARRIVAL_RATE:
        start_value = spec.start_rate or 0.0
    else:
        start_value = spec.start_vus or 0.0

    return ScenarioConfig(
        name=name,
        flow=_resolve_flow(spec.flow, flows),
        mode=mode,
        stages=tuple(Stage(stage.target, parse_duration(stage.duration)) for stage in spec.stages),
        start_offset=parse_duration(spec.start_time),
        constant_value=spec.vus,
        duration=parse_duration(spec.duration) if spec.duration is not None else None,
        start_value=start_value,
        time_unit=parse_duration(spec.time_unit),
        pool_limit=spec.pool_limit if spec.pool_limit is not None else spec.max_vus,
        graceful_stop=parse_duration(spec.graceful_stop),
    )


def build_thresholds(entries: Dict[str, List[Union[str, ThresholdEntry]]]) -> List[ThresholdSpec]:
    thresholds = []
    for metric_key, expressions in entries.items():
        for entry in expressions:
            if isinstance(entry, ThresholdEntry):
                thresholds.append(parse_threshold(metric_key, entry.threshold, entry.abort_on_fail))
            else:
                thresholds.append(parse_threshold(metric_key, entry))
    return thresholds


def _require_positive(label: str, value: float) -> None:
    if value <= 0:
        raise ConfigError(f"{label} must be positive, got {value}")


def parse_run_config(data: Dict[str, Any], source: Optional[str] = None) -> RunConfig:
    """Build a RunConfig from an already-parsed YAML document"""
    if not isinstance(data, dict):
        raise ConfigError("run file must be a mapping")
    try:
        document = RunFile.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"invalid run file: {e}") from e

    flows = {name: build_flow(name, spec) for name, spec in document.flows.items()}
    scenarios = [build_scenario(name, spec, flows) for name, spec in document.scenarios.items()]

    opts = document.options
    options = RunOptions(
        tick_interval=parse_duration(opts.tick_interval),
        abort_grace=parse_duration(opts.abort_grace),
        evaluation_interval=parse_duration(opts.evaluation_interval) if opts.evaluation_interval is not None else None,
        seed=opts.seed,
    )
    params = build_connection_params(document.target)
    _require_positive("tick interval", options.tick_interval)
    _require_positive("abort grace", options.abort_grace)
    if options.evaluation_interval is not None:
        _require_positive("evaluation interval", options.evaluation_interval)
    _require_positive("connect timeout", params.connect_timeout)
    _require_positive("close timeout", params.close_timeout)

    config = RunConfig(
        params=params,
        scenarios=scenarios,
        thresholds=build_thresholds(document.thresholds),
        options=options,
        health_url=document.target.health_url,
        source=source,
    )
    logger.info(f"Loaded {len(scenarios)} scenarios, {len(flows)} custom flows and "
                f"{len(config.thresholds)} thresholds" + (f" from {source}" if source else ""))
    return config


def load_run_config(path: str) -> RunConfig:
    """Load and validate a YAML run file"""
    if not os.path.exists(path):
        raise ConfigError(f"run file not found: {path}")
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"cannot parse {path}: {e}") from e
    if not data:
        raise ConfigError(f"run file is empty: {path}")
    return parse_run_config(data, source=path)
