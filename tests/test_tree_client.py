import asyncio

import httpx
import pytest

from rootstree.errors import GedcomTooLargeError, TransportError
from rootstree.schemas import TreeForm, TreeScope
from rootstree.services.tree_client import TreeApiClient


class _FakeBackend:
    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    async def __call__(self, request):
        await request.aread()
        self.requests.append(request)
        key = (request.method, request.url.path)
        status, payload = self.routes.get(key, (404, {"message": "Not found"}))
        if isinstance(payload, Exception):
            raise payload
        if isinstance(payload, str):
            return httpx.Response(status, text=payload)
        return httpx.Response(status, json=payload)


def _run(routes, action, backend=None, **kwargs):
    backend = backend or _FakeBackend(routes)
    kwargs.setdefault("token", "secret")

    async def scenario():
        async with TreeApiClient(
            "http://test/api",
            transport=httpx.MockTransport(backend),
            **kwargs,
        ) as client:
            return await action(client)

    return asyncio.run(scenario()), backend


def test_list_trees_sends_token_and_skips_invalid_entries():
    routes = {("GET", "/api/my/trees"): (200, [{"id": 1, "title": "Mine"}, {"title": "no id"}])}
    trees, backend = _run(routes, lambda c: c.list_trees(TreeScope.MINE))

    assert [t.id for t in trees] == ["1"]
    request = backend.requests[0]
    assert request.headers["Authorization"] == "Bearer secret"
    assert request.headers["User-Agent"].startswith("rootstree/")


def test_admin_list_falls_back_to_my_trees():
    events = []
    routes = {
        ("GET", "/api/admin/trees"): (403, {"message": "Forbidden"}),
        ("GET", "/api/my/trees"): (200, [{"id": "2"}]),
    }
    trees, backend = _run(routes, lambda c: c.list_trees("my", admin=True), on_auth_event=events.append)

    assert [t.id for t in trees] == ["2"]
    assert [r.url.path for r in backend.requests] == ["/api/admin/trees", "/api/my/trees"]
    assert [(e.kind, e.status_code) for e in events] == [("forbidden", 403)]


def test_protected_call_without_token_fails_before_sending():
    events = []
    with pytest.raises(TransportError) as excinfo:
        _run({}, lambda c: c.list_trees(TreeScope.MINE), token="", on_auth_event=events.append)
    assert excinfo.value.code == "AUTH_MISSING"
    assert [e.kind for e in events] == ["missing"]

    routes = {("GET", "/api/trees"): (200, [{"id": "3", "isPublic": True}])}
    trees, backend = _run(routes, lambda c: c.list_trees(TreeScope.PUBLIC), token="")
    assert trees[0].is_public is True
    assert "Authorization" not in backend.requests[0].headers


def test_expired_session_is_reported():
    events = []
    routes = {("GET", "/api/my/trees/5/gedcom"): (401, {"message": "Token expired"})}
    with pytest.raises(TransportError) as excinfo:
        _run(routes, lambda c: c.fetch_gedcom("5", TreeScope.MINE), on_auth_event=events.append)
    assert excinfo.value.status_code == 401
    assert str(excinfo.value) == "Token expired"
    assert events[0].kind == "expired"


def test_fetch_gedcom_reads_text():
    routes = {("GET", "/api/trees/5/gedcom"): (200, "0 HEAD\r\n0 TRLR\r\n")}
    text, _ = _run(routes, lambda c: c.fetch_gedcom("5", "public"))
    assert text.startswith("0 HEAD")


def test_create_tree_posts_multipart_with_file():
    form = TreeForm(title="My tree", archive_source="Fes", is_public=True)
    routes = {("POST", "/api/my/trees"): (201, {"id": 42, "message": "Created"})}
    tree_id, backend = _run(routes, lambda c: c.create_tree(form, "0 HEAD\r\n0 TRLR\r\n"))

    assert tree_id == "42"
    request = backend.requests[0]
    assert request.headers["Content-Type"].startswith("multipart/form-data")
    body = request.content
    assert b'name="title"' in body
    assert b'name="archiveSource"' in body
    assert b'name="documentCode"' not in body
    assert b'filename="My tree.ged"' in body
    assert b"0 TRLR" in body


def test_create_tree_without_file_sends_form_fields():
    routes = {("POST", "/api/my/trees"): (201, {"id": "7"})}
    tree_id, backend = _run(routes, lambda c: c.create_tree(TreeForm(title="Draft")))

    assert tree_id == "7"
    request = backend.requests[0]
    assert request.headers["Content-Type"] == "application/x-www-form-urlencoded"
    assert b"isPublic=false" in request.content


def test_update_tree_falls_back_to_save_route():
    routes = {
        ("PUT", "/api/my/trees/9"): (405, {"message": "Method not allowed"}),
        ("POST", "/api/my/trees/9/save"): (200, {"id": 9}),
    }
    _, backend = _run(routes, lambda c: c.update_tree("9", TreeForm(title="T"), "0 HEAD\r\n0 TRLR\r\n"))

    assert [(r.method, r.url.path) for r in backend.requests] == [
        ("PUT", "/api/my/trees/9"),
        ("POST", "/api/my/trees/9/save"),
    ]
    assert b"0 TRLR" in backend.requests[1].content


def test_update_tree_surfaces_server_message_without_fallback():
    routes = {("PUT", "/api/my/trees/9"): (400, {"message": "Title is required"})}
    with pytest.raises(TransportError) as excinfo:
        _run(routes, lambda c: c.update_tree("9", TreeForm(title="T")))
    assert excinfo.value.status_code == 400
    assert str(excinfo.value) == "Title is required"


def test_delete_tree_treats_404_as_deleted():
    result, backend = _run({}, lambda c: c.delete_tree("12"))
    assert result is None
    assert backend.requests[0].method == "DELETE"


def test_network_errors_become_transport_errors():
    routes = {("GET", "/api/trees"): (0, httpx.ConnectError("refused"))}
    with pytest.raises(TransportError) as excinfo:
        _run(routes, lambda c: c.list_trees("public"))
    assert excinfo.value.code == "NETWORK"


def test_oversize_gedcom_is_rejected_before_sending():
    backend = _FakeBackend({})
    with pytest.raises(GedcomTooLargeError):
        _run({}, lambda c: c.create_tree(TreeForm(title="Big"), "0 HEAD\r\n"), backend=backend, max_gedcom_bytes=4)
    assert backend.requests == []


def test_error_message_falls_back_to_status():
    routes = {("GET", "/api/trees"): (500, "")}
    with pytest.raises(TransportError) as excinfo:
        _run(routes, lambda c: c.list_trees("public"))
    assert str(excinfo.value) == "HTTP 500"
    assert excinfo.value.status_code == 500
