"""InfluxDB 1.x HTTP sink: /ping and /write with line protocol bodies."""

import logging

import requests

from rtl_slurp.config import InfluxConfig
from rtl_slurp.errors import SinkError
from rtl_slurp.point import Point, encode_points

logger = logging.getLogger(__name__)


class InfluxSink:
    """Thin client around a requests.Session.

    Every transport failure or non-2xx response is raised as SinkError.
    """

    def __init__(self, url: str, username: str = "", password: str = "",
                 timeout: float = 10.0, session: requests.Session | None = None):
        self._url = url.rstrip("/")
        self._username = username
        self._password = password
        self._timeout = timeout
        self._session = session or requests.Session()

    @property
    def url(self) -> str:
        return self._url

    def _auth_params(self) -> dict[str, str]:
        if not self._username:
            return {}
        return {"u": self._username, "p": self._password}

    def ping(self):
        try:
            resp = self._session.get(f"{self._url}/ping", params=self._auth_params(),
                                     timeout=self._timeout)
        except requests.RequestException as e:
            raise SinkError(f"failed to ping InfluxDB at {self._url}: {e}") from e
        if not 200 <= resp.status_code < 300:
            raise SinkError(f"InfluxDB ping returned HTTP {resp.status_code}")
        logger.info("InfluxDB at %s is up (version %s)",
                    self._url, resp.headers.get("X-Influxdb-Version", "unknown"))

    def write(self, points: list[Point], database: str, precision: str = "s"):
        if not points:
            return
        body = encode_points(points, precision)
        params = {"db": database, "precision": precision}
        params.update(self._auth_params())
        try:
            resp = self._session.post(f"{self._url}/write", params=params, data=body,
                                      timeout=self._timeout)
        except requests.RequestException as e:
            raise SinkError(f"write to {self._url} failed: {e}") from e
        if not 200 <= resp.status_code < 300:
            raise SinkError(f"write returned HTTP {resp.status_code}: {resp.text.strip()[:200]}")
        logger.debug("Wrote %d points to %s", len(points), database)

    def close(self):
        self._session.close()


def build_sink(config: InfluxConfig) -> InfluxSink:
    return InfluxSink(config.url, config.username, config.password, config.timeout)
