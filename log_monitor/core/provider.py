from abc import ABC, abstractmethod
from dataclasses import dataclass

import requests
from loguru import logger

from log_monitor.core.errors import RemoteAuthError, RemoteConnectError


@dataclass(frozen=True)
class Workload:
    name: str
    containers: tuple = ()
    ready: bool = False


class LogStream:
    """Iterable of raw byte chunks from a streamed HTTP response."""

    def __init__(self, response, chunk_size=None):
        self._response = response
        self._chunk_size = chunk_size

    def __iter__(self):
        try:
            for chunk in self._response.iter_content(chunk_size=self._chunk_size):
                if chunk:
                    yield chunk
        except requests.RequestException as e:
            raise RemoteConnectError(str(e)) from e
        finally:
            self._response.close()

    def interrupt(self):
        """Closes the connection from another thread; the reader sees end of stream."""
        self._response.close()


class LogProvider(ABC):
    """Where remote workloads and their log streams come from."""

    @abstractmethod
    def list_workloads(self, namespace):
        """Returns the workloads of `namespace` as a list of Workload."""

    @abstractmethod
    def stream_logs(self, namespace, workload, container=None, since_seconds=None, follow=True):
        """Returns an iterable of byte chunks, each line prefixed with an RFC3339Nano timestamp."""


class KubeLogProvider(LogProvider):
    """Kubernetes REST API client for pod listing and log following."""

    def __init__(self, base_url, token=None, verify=True, timeout=10, session=None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.verify = verify
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    def _get(self, path, **kwargs):
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.get(url, **kwargs)
        except requests.RequestException as e:
            raise RemoteConnectError(f"Cannot reach {url}: {e}") from e
        if resp.status_code in (401, 403):
            resp.close()
            raise RemoteAuthError(f"{url} rejected credentials (HTTP {resp.status_code})")
        if resp.status_code >= 400:
            resp.close()
            raise RemoteConnectError(f"{url} answered HTTP {resp.status_code}")
        return resp

    def list_workloads(self, namespace):
        resp = self._get(f"/api/v1/namespaces/{namespace}/pods", timeout=self.timeout)
        try:
            items = resp.json().get("items", [])
        except ValueError as e:
            raise RemoteConnectError(f"Invalid pod list for namespace {namespace}: {e}") from e

        workloads = []
        for item in items:
            name = item.get("metadata", {}).get("name")
            if not name:
                continue
            containers = tuple(c["name"] for c in item.get("spec", {}).get("containers", []))
            statuses = (item.get("status") or {}).get("containerStatuses") or []
            ready = bool(statuses) and bool(statuses[0].get("ready"))
            workloads.append(Workload(name, containers, ready))
        logger.debug(f"Found {len(workloads)} pods in namespace {namespace}")
        return workloads

    def stream_logs(self, namespace, workload, container=None, since_seconds=None, follow=True):
        params = {"follow": "true" if follow else "false", "timestamps": "true"}
        if container:
            params["container"] = container
        if since_seconds is not None:
            params["sinceSeconds"] = int(since_seconds)
        # No read timeout: a followed stream may stay quiet for a long time
        resp = self._get(
            f"/api/v1/namespaces/{namespace}/pods/{workload}/log",
            params=params, stream=True, timeout=(self.timeout, None),
        )
        return LogStream(resp)
