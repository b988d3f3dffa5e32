"""
GatewayProvider: network-backed provider for directory objects, GPOs, shares
and services, talking JSON to a Windows management gateway.

Wire contract (paths relative to the gateway base URL):

    GET    targets/{target}/{kind}/{identity}   -> 200 {"attributes": {...}, "etag": "..."} | 404
    POST   targets/{target}/{kind}              <- {"identity": ..., "attributes": {...}}
    PATCH  targets/{target}/{kind}/{identity}   <- {"attributes": {<changed only>}}
    DELETE targets/{target}/{kind}/{identity}

Update/delete send `If-Match: <etag>` when one was observed, so an external
edit since the fetch comes back as 412 and surfaces as Conflict.

Status mapping:
    401/403            -> PermissionDenied
    409/412            -> Conflict (unless the live object already matches)
    5xx, network, TLS  -> ProviderUnavailable (timeouts -> CallTimeout)
"""

from __future__ import annotations

import json
import logging
import threading
import warnings
from typing import TYPE_CHECKING, Any, Dict, Optional
from urllib.parse import quote

import requests
import urllib3

from ..core.errors import CallTimeout, Conflict, ConfigError, PermissionDenied, ProviderError, ProviderUnavailable
from ..core.executor import RetryPolicy
from ..core.resources import Change, ChangeKind, ObservedState, ResourceKind, ResourceRef
from .base import ProviderPolicy, StateProvider

if TYPE_CHECKING:  # pragma: no cover
    from ..core.config import AppConfig

_LOG_PREVIEW = 200


def _short(text: str, limit: int = _LOG_PREVIEW) -> str:
    return text if len(text) <= limit else text[:limit] + "…"


class GatewayProvider(StateProvider):
    """HTTP/JSON provider for one resource kind."""

    def __init__(
        self,
        kind: ResourceKind,
        base_url: str,
        token: str = "",
        *,
        verify_tls: bool = True,
        timeout_sec: float = 30.0,
        policy: Optional[ProviderPolicy] = None,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        super().__init__(kind, policy=policy, logger=logger)
        if not base_url:
            raise ConfigError("gateway.base_url is required")
        self.base_url = base_url.rstrip("/")
        self.verify_tls = verify_tls
        self.timeout = float(timeout_sec)
        self._headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": "FleetSync/gateway",
        }
        if token:
            self._headers["Authorization"] = f"Bearer {token}"
        self._local = threading.local()

        if not verify_tls:
            warnings.filterwarnings("ignore", category=urllib3.exceptions.InsecureRequestWarning)

    @classmethod
    def default_policy(cls) -> ProviderPolicy:
        return ProviderPolicy(concurrency=4, retry=RetryPolicy(max_attempts=3))

    @classmethod
    def from_config(
        cls,
        kind: ResourceKind,
        cfg: "AppConfig",
        *,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> "GatewayProvider":
        ex = cfg.executor
        policy = ProviderPolicy(
            concurrency=4,
            retry=RetryPolicy(
                max_attempts=ex.max_attempts,
                backoff_base_sec=ex.backoff_base_sec,
                max_backoff_sec=ex.max_backoff_sec,
            ),
            call_timeout_sec=ex.call_timeout_sec,
        )
        return cls(
            kind,
            cfg.gateway.base_url,
            cfg.gateway.token,
            verify_tls=cfg.gateway.verify_tls,
            timeout_sec=cfg.gateway.timeout_sec,
            policy=policy,
            logger=logger,
        )

    # ---------------- StateProvider ----------------

    def fetch(self, ref: ResourceRef) -> ObservedState:
        resp = self._request("GET", self._item_path(ref), ref=ref)
        if resp.status_code == 404:
            return ObservedState.missing(ref)
        self._raise_for_status(resp, ref, "fetch")
        body = self._json(resp, ref)
        attributes = body.get("attributes")
        if not isinstance(attributes, dict):
            raise ProviderUnavailable("gateway response has no 'attributes' object", ref=ref)
        etag = body.get("etag") or resp.headers.get("ETag")
        return ObservedState(ref=ref, exists=True, attributes=attributes, version=etag)

    def apply(self, change: Change) -> None:
        ref = change.ref
        if change.kind is ChangeKind.CREATE:
            resp = self._request(
                "POST",
                self._collection_path(ref),
                ref=ref,
                body={"identity": ref.identity, "attributes": change.desired_attributes},
            )
            if resp.status_code == 409 and self._already_applied(change):
                self.log.info("%s already exists with desired attributes", ref)
                return
            self._raise_for_status(resp, ref, "create")
        elif change.kind is ChangeKind.UPDATE:
            resp = self._request(
                "PATCH",
                self._item_path(ref),
                ref=ref,
                body={"attributes": change.desired_attributes},
                etag=change.version,
            )
            if resp.status_code in (409, 412) and self._already_applied(change):
                self.log.info("%s already carries the desired attributes", ref)
                return
            if resp.status_code == 404:
                raise Conflict("object disappeared since it was fetched", ref=ref)
            self._raise_for_status(resp, ref, "update")
        elif change.kind is ChangeKind.DELETE:
            resp = self._request("DELETE", self._item_path(ref), ref=ref, etag=change.version)
            if resp.status_code == 404:
                return  # already gone
            self._raise_for_status(resp, ref, "delete")
        else:
            raise ProviderError(f"cannot apply a '{change.kind.value}' change", ref=ref)
        self.log.debug("%s %s applied", change.kind.value, ref)

    # ---------------- HTTP plumbing ----------------

    def _session(self) -> requests.Session:
        s = getattr(self._local, "session", None)
        if s is None:
            s = requests.Session()
            s.headers.update(self._headers)
            self._local.session = s
        return s

    def _collection_path(self, ref: ResourceRef) -> str:
        return f"targets/{quote(ref.target, safe='')}/{ref.kind.value}"

    def _item_path(self, ref: ResourceRef) -> str:
        return f"{self._collection_path(ref)}/{quote(ref.identity, safe='')}"

    def _request(
        self,
        method: str,
        path: str,
        *,
        ref: ResourceRef,
        body: Optional[Dict[str, Any]] = None,
        etag: Optional[str] = None,
    ) -> requests.Response:
        url = f"{self.base_url}/{path}"
        headers = {"If-Match": etag} if etag else None
        try:
            resp = self._session().request(
                method,
                url,
                json=body,
                headers=headers,
                timeout=self.timeout,
                verify=self.verify_tls,
            )
        except requests.Timeout as exc:
            self.log.warning("%s %s timed out: %s", method, path, exc)
            raise CallTimeout(f"{method} {path} timed out", ref=ref) from exc
        except requests.RequestException as exc:
            self.log.warning("%s %s failed: %s", method, path, exc)
            raise ProviderUnavailable(f"{method} {path} failed: {exc}", ref=ref) from exc
        self.log.debug("%s %s -> %s", method, path, resp.status_code)
        return resp

    @staticmethod
    def _json(resp: requests.Response, ref: ResourceRef) -> Dict[str, Any]:
        if not resp.text:
            return {}
        try:
            data = resp.json()
        except (ValueError, json.JSONDecodeError) as exc:
            raise ProviderUnavailable(f"non-JSON response: {_short(resp.text)}", ref=ref) from exc
        if not isinstance(data, dict):
            raise ProviderUnavailable("gateway response must be a JSON object", ref=ref)
        return data

    @staticmethod
    def _raise_for_status(resp: requests.Response, ref: ResourceRef, action: str) -> None:
        status = resp.status_code
        if status < 400:
            return
        detail = f"{action} -> HTTP {status}: {_short(resp.text or '')}"
        if status in (401, 403):
            raise PermissionDenied(detail, ref=ref)
        if status in (409, 412):
            raise Conflict(detail, ref=ref)
        if status >= 500 or status in (408, 429):
            raise ProviderUnavailable(detail, ref=ref)
        raise ProviderError(detail, ref=ref)

    def _already_applied(self, change: Change) -> bool:
        """True when the live object already holds every attribute the change writes."""
        observed = self.fetch(change.ref)
        return observed.exists and self.holds(observed.attributes, change.desired_attributes)
