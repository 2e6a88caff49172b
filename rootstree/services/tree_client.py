from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

import httpx
from pydantic import ValidationError as SchemaError

from rootstree.config import get_settings
from rootstree.errors import TransportError
from rootstree.schemas import AuthEvent, Tree, TreeForm, TreeScope
from rootstree.services.gedcom import decode_gedcom_bytes, ensure_within_size_limit
from rootstree.version import user_agent

logger = logging.getLogger(__name__)

PROTECTED_PREFIXES = ("/my/", "/admin/")
ADMIN_READ_FALLBACK_STATUSES = frozenset({401, 403, 404, 405, 500, 501})
UPDATE_FALLBACK_STATUSES = frozenset({404, 405, 500, 501})


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict):
        for key in ("message", "error"):
            if data.get(key):
                return str(data[key])
    text = response.text.strip()
    return text[:200] if text else f"HTTP {response.status_code}"


def _gedcom_file(title: str, gedcom: str) -> dict[str, tuple[str, bytes, str]]:
    name = (title or "").strip() or "tree"
    return {"file": (f"{name}.ged", gedcom.encode("utf-8"), "text/plain")}


class TreeApiClient:
    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        *,
        timeout_seconds: float | None = None,
        max_gedcom_bytes: int | None = None,
        on_auth_event: Callable[[AuthEvent], None] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        self.token = token if token is not None else settings.api_token
        self.max_gedcom_bytes = max_gedcom_bytes or settings.max_gedcom_bytes
        self._on_auth_event = on_auth_event
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.api_base_url,
            timeout=timeout_seconds or settings.api_timeout_seconds,
            headers={"Accept": "application/json", "User-Agent": user_agent()},
            transport=transport,
        )

    async def __aenter__(self) -> TreeApiClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _emit_auth(self, kind: str, path: str, status_code: int | None = None) -> None:
        logger.warning("Auth event %s on %s", kind, path)
        if self._on_auth_event is not None:
            self._on_auth_event(AuthEvent(kind=kind, path=path, status_code=status_code))

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        elif path.startswith(PROTECTED_PREFIXES):
            self._emit_auth("missing", path)
            raise TransportError("Not signed in.", code="AUTH_MISSING")

        try:
            response = await self._client.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise TransportError(f"{method} {path} failed: {exc}", code="NETWORK") from exc

        if response.status_code in (401, 403):
            self._emit_auth("expired" if response.status_code == 401 else "forbidden", path, response.status_code)
        if response.is_error:
            raise TransportError(
                _error_message(response),
                status_code=response.status_code,
                code="AUTH" if response.status_code in (401, 403) else "HTTP",
            )
        return response

    async def _request_with_fallback(
        self,
        attempts: list[tuple[str, str]],
        fallback_statuses: frozenset[int],
        build_kwargs: Callable[[], dict[str, Any]] | None = None,
    ) -> httpx.Response:
        for index, (method, path) in enumerate(attempts):
            kwargs = build_kwargs() if build_kwargs else {}
            try:
                return await self._request(method, path, **kwargs)
            except TransportError as exc:
                last = index == len(attempts) - 1
                if last or exc.status_code not in fallback_statuses:
                    raise
                logger.info("%s %s returned %s, falling back", method, path, exc.status_code)
        raise TransportError("No request attempted.")

    async def list_trees(self, scope: TreeScope | str, admin: bool = False) -> list[Tree]:
        scope = TreeScope(scope)
        if scope is TreeScope.PUBLIC:
            response = await self._request("GET", "/trees")
        elif admin:
            response = await self._request_with_fallback(
                [("GET", "/admin/trees"), ("GET", "/my/trees")],
                ADMIN_READ_FALLBACK_STATUSES,
            )
        else:
            response = await self._request("GET", "/my/trees")

        try:
            data = response.json()
        except ValueError as exc:
            raise TransportError("Tree list is not valid JSON.", status_code=response.status_code) from exc
        if not isinstance(data, list):
            logger.warning("Unexpected tree list payload for %s scope", scope.value)
            return []
        trees: list[Tree] = []
        for item in data:
            try:
                trees.append(Tree.model_validate(item))
            except SchemaError as exc:
                logger.warning("Skipping invalid tree entry: %s", exc)
        return trees

    async def fetch_gedcom(self, tree_id: str, scope: TreeScope | str) -> str:
        prefix = "/my/trees" if TreeScope(scope) is TreeScope.MINE else "/trees"
        response = await self._request("GET", f"{prefix}/{tree_id}/gedcom", headers={"Accept": "text/plain"})
        return decode_gedcom_bytes(response.content)

    def _payload(self, form: TreeForm, gedcom: str | None) -> Callable[[], dict[str, Any]]:
        if gedcom is not None:
            ensure_within_size_limit(gedcom, self.max_gedcom_bytes)
        fields = form.multipart_fields()

        def build() -> dict[str, Any]:
            if gedcom is None:
                return {"data": fields}
            return {"data": fields, "files": _gedcom_file(form.title, gedcom)}

        return build

    async def create_tree(self, form: TreeForm, gedcom: str | None = None) -> str:
        build = self._payload(form, gedcom)
        response = await self._request("POST", "/my/trees", **build())
        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict) or data.get("id") in (None, ""):
            raise TransportError("Create response did not include a tree id.", status_code=response.status_code)
        return str(data["id"])

    async def update_tree(self, tree_id: str, form: TreeForm, gedcom: str | None = None) -> None:
        build = self._payload(form, gedcom)
        await self._request_with_fallback(
            [("PUT", f"/my/trees/{tree_id}"), ("POST", f"/my/trees/{tree_id}/save")],
            UPDATE_FALLBACK_STATUSES,
            build,
        )

    async def delete_tree(self, tree_id: str) -> None:
        try:
            await self._request("DELETE", f"/my/trees/{tree_id}")
        except TransportError as exc:
            if exc.status_code != 404:
                raise
            logger.info("Tree %s already deleted", tree_id)
