from __future__ import annotations

import json
import logging
import math
import re
import signal
import sys
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from socketserver import ThreadingMixIn
from threading import Lock, Thread
from typing import Any, Dict, Iterator, List, Optional, Tuple
from urllib.parse import quote_plus
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

import click
import requests
import yaml
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily
from prometheus_client.platform_collector import PlatformCollector
from prometheus_client.process_collector import ProcessCollector

__version__ = "1.0.0"

LABEL_NAMES = ["name", "label", "room"]

DEFAULT_LISTEN_ADDRESS = "0.0.0.0:9999"
DEFAULT_TELEMETRY_PATH = "/metrics"

# Attributes reported as state strings rather than numbers.
ENUM_STATES: Dict[str, Dict[str, float]] = {
    "motion": {"inactive": 0.0, "active": 1.0},
    "contact": {"closed": 0.0, "open": 1.0},
}

# Prefix of the exporter's own families; attribute metrics may not use it.
RESERVED_PREFIX = "hubitat_"

_METRIC_NAME_RE = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*$")
_FLOAT_RE = re.compile(
    r"^[+-]?((\d+\.?\d*|\.\d+)([eE][+-]?\d+)?|inf|infinity|nan)$", re.IGNORECASE
)


class ExporterError(Exception):
    pass


class ConfigError(ExporterError):
    pass


class FetchError(ExporterError):
    pass


class CoercionError(ExporterError, ValueError):
    pass


@dataclass(frozen=True)
class HubConfig:
    maker_api: str
    access_token: str
    metrics: Tuple[str, ...]
    listen_address: str = DEFAULT_LISTEN_ADDRESS
    telemetry_path: str = DEFAULT_TELEMETRY_PATH
    timeout_seconds: Optional[float] = None


class ValueKind(Enum):
    STRING = "string"
    NUMBER = "number"
    NULL = "null"
    OTHER = "other"


@dataclass(frozen=True)
class RawValue:
    kind: ValueKind
    value: Any = None

    @classmethod
    def from_json(cls, x: Any) -> "RawValue":
        if x is None:
            return cls(ValueKind.NULL)
        if isinstance(x, str):
            return cls(ValueKind.STRING, x)
        if isinstance(x, (int, float)) and not isinstance(x, bool):
            return cls(ValueKind.NUMBER, x)
        return cls(ValueKind.OTHER, x)


@dataclass
class Device:
    name: str  # per manufacturer, e.g. "Aeotec AerQ"
    label: str  # user controllable, e.g. "Living Room T&H Sensor"
    room: str = ""
    attributes: Dict[str, RawValue] = field(default_factory=dict)

    @property
    def label_values(self) -> Tuple[str, str, str]:
        return (self.name, self.label, self.room)


def setup_logging(level: str) -> None:
    lvl = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=lvl, format="%(asctime)s %(levelname)s %(message)s")


def parse_listen_address(s: str) -> Tuple[str, int]:
    s = s.strip()
    if s.startswith(":"):
        return "", int(s[1:])
    if ":" in s:
        host, port_s = s.rsplit(":", 1)
        return host, int(port_s)
    return "", int(s)


def _section(raw: Dict[str, Any], key: str, allowed: Tuple[str, ...]) -> Dict[str, Any]:
    sec = raw.get(key)
    if sec is None:
        return {}
    if not isinstance(sec, dict):
        raise ConfigError(f"'{key}' must be a mapping")
    unknown = sorted(str(k) for k in sec if k not in allowed)
    if unknown:
        raise ConfigError(f"unknown keys in '{key}': {', '.join(unknown)}")
    return sec


def parse_config(raw: Any) -> HubConfig:
    if not isinstance(raw, dict):
        raise ConfigError("config root must be a mapping/object")

    unknown = sorted(str(k) for k in raw if k not in ("maker_api", "access_token", "metrics", "web", "scrape"))
    if unknown:
        raise ConfigError(f"unknown config keys: {', '.join(unknown)}")

    maker_api = raw.get("maker_api")
    if not isinstance(maker_api, str) or not maker_api.strip():
        raise ConfigError("'maker_api' is required")
    access_token = raw.get("access_token")
    if not isinstance(access_token, str) or not access_token:
        raise ConfigError("'access_token' is required")

    metrics_raw = raw.get("metrics") or []
    if not isinstance(metrics_raw, list):
        raise ConfigError("'metrics' must be a list of attribute names")
    metrics: List[str] = []
    for m in metrics_raw:
        if not isinstance(m, str) or not _METRIC_NAME_RE.match(m):
            raise ConfigError(f"invalid metric name: {m!r}")
        if m.startswith(RESERVED_PREFIX):
            raise ConfigError(f"metric name {m!r} is reserved for exporter metrics")
        if m not in metrics:
            metrics.append(m)

    web = _section(raw, "web", ("listen_address", "telemetry_path"))
    scrape = _section(raw, "scrape", ("timeout_seconds",))

    telemetry_path = str(web.get("telemetry_path", DEFAULT_TELEMETRY_PATH))
    if not telemetry_path.startswith("/"):
        raise ConfigError("'web.telemetry_path' must start with '/'")

    timeout = scrape.get("timeout_seconds")
    try:
        timeout_seconds = float(timeout) if timeout is not None else None
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid 'scrape.timeout_seconds': {timeout!r}") from e

    return HubConfig(
        maker_api=maker_api.strip(),
        access_token=access_token,
        metrics=tuple(metrics),
        listen_address=str(web.get("listen_address", DEFAULT_LISTEN_ADDRESS)),
        telemetry_path=telemetry_path,
        timeout_seconds=timeout_seconds,
    )


def load_config_file(path: str) -> HubConfig:
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = f.read()
    except OSError as e:
        raise ConfigError(f"reading config file {path}: {e}") from e

    try:
        if path.lower().endswith(".json"):
            data = json.loads(raw)
        else:
            data = yaml.safe_load(raw)
    except (ValueError, yaml.YAMLError) as e:
        raise ConfigError(f"parsing config from {path}: {e}") from e

    return parse_config(data)


def decode_devices(payload: Any) -> List[Device]:
    """Decode the Maker API ``/all`` response into devices, keeping response order."""
    if not isinstance(payload, list):
        raise FetchError(f"expected a JSON array of devices, got {type(payload).__name__}")

    out: List[Device] = []
    for item in payload:
        if not isinstance(item, dict):
            raise FetchError(f"expected a device object, got {type(item).__name__}")
        attrs = item.get("attributes")
        if attrs is None:
            attrs = {}
        if not isinstance(attrs, dict):
            raise FetchError(f"device {item.get('label')!r}: 'attributes' must be an object")
        for key in ("name", "label", "room"):
            if not isinstance(item.get(key), (str, type(None))):
                raise FetchError(f"device field {key!r} must be a string, got {type(item[key]).__name__}")
        out.append(
            Device(
                name=item.get("name") or "",
                label=item.get("label") or "",
                room=item.get("room") or "",
                attributes={str(k): RawValue.from_json(v) for k, v in attrs.items()},
            )
        )
    return out


class HubClient:
    """Fetches the full device snapshot from a Hubitat Maker API instance."""

    def __init__(self, maker_api: str, access_token: str, timeout_seconds: Optional[float] = None) -> None:
        self.api_base = maker_api.rstrip("/")
        self.access_token = access_token
        self.timeout_seconds = timeout_seconds
        self.session = requests.Session()

    @classmethod
    def from_config(cls, cfg: HubConfig) -> "HubClient":
        return cls(cfg.maker_api, cfg.access_token, timeout_seconds=cfg.timeout_seconds)

    @property
    def all_url(self) -> str:
        return self.api_base + "/all?access_token=" + quote_plus(self.access_token)

    def fetch_devices(self) -> List[Device]:
        logging.debug("scraping %s/all?access_token=<redacted>", self.api_base)
        try:
            resp = self.session.get(self.all_url, timeout=self.timeout_seconds)
        except requests.RequestException as e:
            raise FetchError(f"request failed: {self._redact(e)}") from None

        try:
            if resp.status_code != 200:
                raise FetchError(f"non-200 HTTP status: {resp.status_code} {resp.reason}")
            try:
                body = resp.content
            except requests.RequestException as e:
                raise FetchError(f"reading response body: {self._redact(e)}") from None
        finally:
            resp.close()

        logging.debug("%d JSON bytes returned", len(body))
        try:
            payload = json.loads(body)
        except ValueError as e:
            raise FetchError(f"parsing JSON of response body: {e}") from e

        devices = decode_devices(payload)
        logging.debug("parsed info for %d devices", len(devices))
        return devices

    def _redact(self, e: Exception) -> str:
        msg = str(e)
        for secret in (self.access_token, quote_plus(self.access_token)):
            if secret:
                msg = msg.replace(secret, "<redacted>")
        return msg

    def close(self) -> None:
        self.session.close()


def coerce_value(attribute: str, raw: str) -> float:
    states = ENUM_STATES.get(attribute)
    if states is not None:
        if raw not in states:
            raise CoercionError(f"unknown {attribute}={raw!r}")
        return states[raw]

    if not _FLOAT_RE.match(raw):
        raise CoercionError(f"bad float attribute {attribute}={raw!r}")
    value = float(raw)
    if math.isinf(value) and "inf" not in raw.lower():
        raise CoercionError(f"float attribute {attribute}={raw!r} out of range")
    return value


SeriesTable = Dict[str, Dict[Tuple[str, str, str], float]]


class HubCollector:
    """Custom collector that refreshes every configured gauge from the hub on each scrape.

    The series table is replaced wholesale after each successful fetch, so devices
    that disappear from the hub drop out of the output. A failed fetch leaves the
    previous table in place.
    """

    def __init__(self, client: Any, metrics: List[str]) -> None:
        self.client = client
        self.metrics = list(dict.fromkeys(metrics))
        self.series: SeriesTable = {m: {} for m in self.metrics}
        self.lock = Lock()

        self.last_fetch_ok: bool = False
        self.last_device_count: int = 0
        self.last_scrape_duration: float = 0.0
        self.last_ok_ts: float = 0.0
        self.scrape_errors_total: int = 0
        self.attribute_errors_total: Dict[str, int] = {}

    def translate(self, devices: List[Device]) -> SeriesTable:
        table: SeriesTable = {m: {} for m in self.metrics}
        for dev in devices:
            for attr, raw in dev.attributes.items():
                gauge = table.get(attr)
                if gauge is None:
                    # Metric not enabled.
                    continue
                if raw.kind is not ValueKind.STRING:
                    # Null, numeric and other JSON values are not converted.
                    continue
                try:
                    value = coerce_value(attr, raw.value)
                except CoercionError as e:
                    logging.warning("%s for %r", e, dev.label)
                    self.attribute_errors_total[attr] = self.attribute_errors_total.get(attr, 0) + 1
                    continue
                gauge[dev.label_values] = value
        return table

    def refresh(self) -> None:
        t0 = time.time()
        try:
            devices = self.client.fetch_devices()
        except FetchError as e:
            self.scrape_errors_total += 1
            self.last_fetch_ok = False
            logging.warning("hub scrape failed: %s", e)
        else:
            self.series = self.translate(devices)
            self.last_fetch_ok = True
            self.last_device_count = len(devices)
            self.last_ok_ts = time.time()
        self.last_scrape_duration = time.time() - t0

    def _attribute_families(self) -> List[GaugeMetricFamily]:
        return [
            GaugeMetricFamily(m, f"Hubitat device attribute {m}.", labels=LABEL_NAMES)
            for m in self.metrics
        ]

    def _exporter_families(self) -> Tuple[Any, ...]:
        return (
            GaugeMetricFamily("hubitat_up", "Last hub scrape ok (1) or failed (0)."),
            GaugeMetricFamily("hubitat_devices", "Devices returned by the last successful hub scrape."),
            GaugeMetricFamily("hubitat_last_scrape_duration_seconds", "Duration of the last hub scrape in seconds."),
            GaugeMetricFamily("hubitat_last_success_timestamp", "Unix timestamp of the last successful hub scrape (-1 never)."),
            CounterMetricFamily("hubitat_scrape_errors", "Total failed hub scrapes."),
            CounterMetricFamily("hubitat_attribute_errors", "Total attribute values that could not be converted.", labels=["attribute"]),
            GaugeMetricFamily("hubitat_exporter_build_info", "Exporter build information.", labels=["version", "python"]),
        )

    def describe(self) -> Iterator[Any]:
        yield from self._attribute_families()
        yield from self._exporter_families()

    def collect(self) -> Iterator[Any]:
        families = self._attribute_families()
        up, devices, dur, last_ok, scrape_err, attr_err, build = self._exporter_families()

        with self.lock:
            self.refresh()

            for fam in families:
                for label_values, value in self.series[fam.name].items():
                    fam.add_metric(list(label_values), value)

            up.add_metric([], 1.0 if self.last_fetch_ok else 0.0)
            devices.add_metric([], float(self.last_device_count))
            dur.add_metric([], float(self.last_scrape_duration))
            last_ok.add_metric([], float(self.last_ok_ts) if self.last_ok_ts > 0 else -1.0)
            scrape_err.add_metric([], float(self.scrape_errors_total))
            for attr, n in self.attribute_errors_total.items():
                attr_err.add_metric([attr], float(n))

        build.add_metric([__version__, sys.version.split()[0]], 1.0)

        yield from families
        yield up
        yield devices
        yield dur
        yield last_ok
        yield scrape_err
        yield attr_err
        yield build


class ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    daemon_threads = True
    allow_reuse_address = True


class QuietHandler(WSGIRequestHandler):
    def log_message(self, format: str, *args: Any) -> None:
        return


def make_app(registry: CollectorRegistry, telemetry_path: str):
    def app(environ, start_response):
        path = environ.get("PATH_INFO", "")
        if path == telemetry_path or path == "/":
            output = generate_latest(registry)
            start_response("200 OK", [("Content-Type", CONTENT_TYPE_LATEST)])
            return [output]
        if path in ("/-/healthy", "/healthz"):
            start_response("200 OK", [("Content-Type", "text/plain")])
            return [b"ok"]
        start_response("404 Not Found", [("Content-Type", "text/plain")])
        return [b"not found"]

    return app


def build_registry(collector: HubCollector) -> CollectorRegistry:
    registry = CollectorRegistry()
    ProcessCollector(registry=registry)
    PlatformCollector(registry=registry)
    registry.register(collector)
    return registry


def find_config_file(explicit: Optional[str]) -> Optional[str]:
    if explicit:
        return explicit
    candidates = [
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parent / "config.yaml",
        Path("/config/config.yaml"),
    ]
    for c in candidates:
        if c.is_file():
            return str(c)
    return None


@click.command()
@click.option("--config.file", "config_file", envvar="HUBITAT_EXPORTER_CONFIG", default=None, help="Path to the YAML or JSON config file.")
@click.option("--web.listen-address", "web_listen_address", default=None, help="Address to listen on, e.g. :9999 or 0.0.0.0:9999.")
@click.option("--web.telemetry-path", "web_telemetry_path", default=None, help="Path under which to expose metrics.")
@click.option("--log.level", "log_level", envvar="LOG_LEVEL", default="INFO", help="Logging level.")
def main(config_file: Optional[str], web_listen_address: Optional[str], web_telemetry_path: Optional[str], log_level: str) -> None:
    setup_logging(log_level)

    cfg_path = find_config_file(config_file)
    if not cfg_path:
        raise click.ClickException(
            "missing config file: use --config.file=PATH, set HUBITAT_EXPORTER_CONFIG=PATH, "
            "or place config.yaml in the current directory, script directory, or /config/config.yaml"
        )

    try:
        cfg = load_config_file(cfg_path)
    except ConfigError as e:
        raise click.ClickException(str(e)) from e
    logging.info("config_file=%s", cfg_path)

    listen = web_listen_address or cfg.listen_address
    telemetry_path = web_telemetry_path or cfg.telemetry_path
    try:
        host, port = parse_listen_address(listen)
    except ValueError as e:
        raise click.ClickException(f"invalid listen address {listen!r}") from e

    client = HubClient.from_config(cfg)
    collector = HubCollector(client, list(cfg.metrics))
    try:
        registry = build_registry(collector)
    except ValueError as e:
        raise click.ClickException(f"registering metrics: {e}") from e

    httpd = make_server(
        host,
        port,
        make_app(registry, telemetry_path),
        server_class=ThreadingWSGIServer,
        handler_class=QuietHandler,
    )

    def _sig(*_):
        Thread(target=httpd.shutdown, daemon=True).start()

    signal.signal(signal.SIGTERM, _sig)
    signal.signal(signal.SIGINT, _sig)

    logging.info(
        "listening=%s:%s telemetry_path=%s maker_api=%s metrics=%s timeout=%s",
        host if host else "0.0.0.0",
        httpd.server_port,
        telemetry_path,
        client.api_base,
        ",".join(cfg.metrics),
        cfg.timeout_seconds,
    )

    try:
        httpd.serve_forever()
    finally:
        client.close()
        httpd.server_close()


if __name__ == "__main__":
    main()
