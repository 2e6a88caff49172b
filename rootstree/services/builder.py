from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

from rootstree.config import get_settings
from rootstree.errors import ReadOnlyError, TreeError, ValidationError
from rootstree.models import Person
from rootstree.schemas import Tree, TreeForm, TreeScope
from rootstree.services.autosave import AutoSaveScheduler, SchedulerState
from rootstree.services.gedcom import (
    Translate,
    build_gedcom,
    default_translate,
    parse_gedcom,
    read_gedcom_upload,
)
from rootstree.services.graph import PersonGraph
from rootstree.services.layout import Link, compute_generations, relationship_links
from rootstree.services.trees import TreeCatalog, upsert_tree

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BuilderState(str, Enum):
    EMPTY = "empty"
    LOADING = "loading"
    READY = "ready"
    DIRTY = "dirty"
    SAVING = "saving"


@dataclass
class Notice:
    level: str
    kind: str
    message: str
    error: Exception | None = None
    blocking: bool = False


@dataclass
class _Snapshot:
    tree_id: str
    people: list[Person]
    form: TreeForm
    revision: int


class TreeBuilder:
    """Editing session for one family tree.

    Entry points never raise errors of the ``TreeError`` family. They store
    the error on ``last_error``, send an error ``Notice`` and return a falsy
    value.
    """

    def __init__(
        self,
        client,
        *,
        locale: str | None = None,
        translate: Translate | None = None,
        is_admin: bool = False,
        autosave_delay: float | None = None,
        max_gedcom_bytes: int | None = None,
        on_notice: Callable[[Notice], None] | None = None,
        catalog: TreeCatalog | None = None,
    ):
        settings = get_settings()
        self._client = client
        self.locale = locale or settings.default_locale
        self.translate = translate or default_translate
        self.is_admin = is_admin
        self.max_gedcom_bytes = max_gedcom_bytes or settings.max_gedcom_bytes
        self._on_notice = on_notice
        self._catalog = catalog

        self._graph = PersonGraph()
        self._tree: Tree | None = None
        self._scope: TreeScope | None = None
        self._form = TreeForm()
        self._state = BuilderState.EMPTY
        self._dirty = False
        self._revision = 0
        self._selection = 0
        self._explicit_saving = False
        self._closed = False
        self._last_error: Exception | None = None
        self._warnings: list[str] = []

        delay = autosave_delay if autosave_delay is not None else settings.autosave_delay_ms / 1000
        self._scheduler = AutoSaveScheduler(
            self._auto_save,
            delay=delay,
            guard=self._can_auto_save,
            on_saved=self._auto_saved,
            on_error=self._auto_save_failed,
        )

    # read access

    @property
    def state(self) -> BuilderState:
        return self._state

    @property
    def tree(self) -> Tree | None:
        return self._tree

    @property
    def scope(self) -> TreeScope | None:
        return self._scope

    @property
    def form(self) -> TreeForm:
        return self._form.model_copy()

    @property
    def people(self) -> list[Person]:
        return self._graph.snapshot()

    @property
    def dirty(self) -> bool:
        return self._dirty

    @property
    def last_error(self) -> Exception | None:
        return self._last_error

    @property
    def warnings(self) -> list[str]:
        return list(self._warnings)

    @property
    def autosave_state(self) -> SchedulerState:
        return self._scheduler.state

    @property
    def read_only(self) -> bool:
        if self._tree is None:
            return False
        return not (self._scope is TreeScope.MINE or self.is_admin)

    def person(self, person_id: str) -> Person | None:
        return self._graph.get(person_id)

    def search(self, query: str = "") -> list[Person]:
        return self._graph.search(query, self.locale)

    def layout(self) -> tuple[list[Link], dict[str, int]]:
        people = self._graph.snapshot()
        links = relationship_links(people)
        return links, compute_generations(people, links)

    # notices

    def _notify(self, kind: str, fallback: str) -> None:
        if self._on_notice is not None and not self._closed:
            self._on_notice(Notice(level="info", kind=kind, message=self.translate(kind, fallback)))

    def _report(self, error: Exception, kind: str = "action_failed", blocking: bool = True) -> None:
        self._last_error = error
        logger.warning("%s: %s", kind, error)
        if self._on_notice is not None and not self._closed:
            self._on_notice(
                Notice(level="error", kind=kind, message=str(error), error=error, blocking=blocking)
            )

    # tree selection

    async def select_tree(self, tree: Tree, scope: TreeScope | str) -> bool:
        self._scheduler.cancel()
        self._selection += 1
        token = self._selection
        self._tree = tree
        self._scope = TreeScope(scope)
        self._form = TreeForm.from_tree(tree)
        self._graph = PersonGraph()
        self._dirty = False
        self._revision += 1
        self._warnings = []
        self._last_error = None

        if not tree.has_gedcom:
            self._state = BuilderState.READY
            return True

        self._state = BuilderState.LOADING
        try:
            text = await self._client.fetch_gedcom(tree.id, self._scope)
            result = parse_gedcom(text)
            graph = PersonGraph(result.people)
        except TreeError as exc:
            if token != self._selection:
                logger.info("Discarded failed load of superseded tree %s", tree.id)
                return False
            self._reset()
            self._report(exc, "load_failed")
            return False

        if token != self._selection:
            logger.info("Discarded GEDCOM of superseded tree %s", tree.id)
            return False
        self._graph = graph
        self._warnings = result.warnings + graph.repairs
        self._state = BuilderState.READY
        self._notify("tree_loaded", "Tree loaded.")
        return True

    def clear(self) -> None:
        self._scheduler.cancel()
        self._selection += 1
        self._reset()
        self._last_error = None

    def close(self) -> None:
        self._scheduler.cancel()
        self._selection += 1
        self._closed = True

    def _reset(self) -> None:
        self._tree = None
        self._scope = None
        self._form = TreeForm()
        self._graph = PersonGraph()
        self._dirty = False
        self._revision += 1
        self._warnings = []
        self._state = BuilderState.EMPTY

    # mutations

    def _ensure_editable(self) -> None:
        if self._closed:
            raise TreeError("Builder is closed.")
        if self.read_only:
            raise ReadOnlyError("This tree is read-only.")
        if self._state is BuilderState.LOADING:
            raise TreeError("Tree is still loading.")

    def _mutate(self, action: Callable[[], T]) -> T | None:
        try:
            self._ensure_editable()
            result = action()
        except TreeError as exc:
            self._report(exc)
            return None
        self._touch()
        return result

    def _touch(self) -> None:
        self._dirty = True
        self._revision += 1
        if self._state is not BuilderState.SAVING:
            self._state = BuilderState.DIRTY
        if self._tree is not None:
            self._scheduler.schedule(self._snapshot())

    def _snapshot(self) -> _Snapshot:
        return _Snapshot(
            tree_id=self._tree.id,
            people=self._graph.snapshot(),
            form=self._form.model_copy(),
            revision=self._revision,
        )

    def add_person(self, name: str = "", *, locale: str | None = None, **fields: Any) -> Person | None:
        def action() -> Person:
            if not (name or "").strip():
                raise ValidationError("A name is required.")
            person = Person(id=fields.pop("id", ""), names={locale or self.locale: name.strip()}, **fields)
            return self._graph.add_person(person)

        return self._mutate(action)

    def update_person(self, person_id: str, **fields: Any) -> Person | None:
        return self._mutate(lambda: self._graph.update_person(person_id, **fields))

    def remove_person(self, person_id: str) -> Person | None:
        return self._mutate(lambda: self._graph.remove_person(person_id))

    def connect_parent(self, parent_id: str, child_id: str, role: str | None = None) -> Person | None:
        return self._mutate(lambda: self._graph.connect_parent(parent_id, child_id, role))

    def disconnect_parent(self, parent_id: str, child_id: str) -> bool:
        return bool(self._mutate(lambda: self._graph.disconnect_parent(parent_id, child_id)))

    def set_spouse(self, person_id: str, spouse_id: str) -> bool:
        return self._mutate(lambda: self._graph.set_spouse(person_id, spouse_id) or True) is not None

    def clear_spouse(self, person_id: str) -> bool:
        return bool(self._mutate(lambda: self._graph.clear_spouse(person_id)))

    def import_gedcom(self, filename: str, content: bytes) -> int | None:
        def action() -> int:
            text = read_gedcom_upload(filename, content, self.max_gedcom_bytes)
            result = parse_gedcom(text)
            graph = PersonGraph(result.people)
            self._graph = graph
            self._warnings = result.warnings + graph.repairs
            return len(graph)

        imported = self._mutate(action)
        if imported is not None:
            self._notify("gedcom_imported", "GEDCOM imported.")
        return imported

    def update_form(self, **fields: Any) -> bool:
        unknown = set(fields) - set(TreeForm.model_fields)
        try:
            if unknown:
                raise ValidationError(f"Unknown tree fields: {', '.join(sorted(unknown))}.")
            self._ensure_editable()
        except TreeError as exc:
            self._report(exc)
            return False
        self._form = TreeForm.model_validate({**self._form.model_dump(), **fields})
        return True

    # auto-save

    def _can_auto_save(self) -> bool:
        return (
            not self._closed
            and not self.read_only
            and self._tree is not None
            and bool(self._tree.id)
            and bool(self._form.title.strip())
            and not self._explicit_saving
        )

    async def _auto_save(self, snapshot: _Snapshot) -> None:
        if self._owns(snapshot) and self._state is BuilderState.DIRTY:
            self._state = BuilderState.SAVING
        gedcom = build_gedcom(snapshot.people, self.locale, self.translate)
        await self._client.update_tree(snapshot.tree_id, snapshot.form, gedcom)

    def _owns(self, snapshot: _Snapshot) -> bool:
        return self._tree is not None and self._tree.id == snapshot.tree_id

    def _auto_saved(self, snapshot: _Snapshot, _result: Any) -> None:
        if not self._owns(snapshot):
            return
        if snapshot.revision == self._revision and not self._scheduler.has_pending:
            self._dirty = False
        if not self._explicit_saving and self._state in {BuilderState.DIRTY, BuilderState.SAVING}:
            self._state = BuilderState.DIRTY if self._dirty else BuilderState.READY
        self._mirror(snapshot.form, has_gedcom=True)
        self._notify("auto_saved", "Changes saved.")

    def _auto_save_failed(self, error: Exception, snapshot: _Snapshot) -> None:
        if self._owns(snapshot) and not self._explicit_saving and self._state is BuilderState.SAVING:
            self._state = BuilderState.DIRTY
        self._report(error, "auto_save_failed", blocking=False)

    def _mirror(self, form: TreeForm, has_gedcom: bool | None = None) -> None:
        patch: dict[str, Any] = {"id": self._tree.id, **form.model_dump()}
        if has_gedcom is not None:
            patch["has_gedcom"] = has_gedcom or self._tree.has_gedcom
        if self._catalog is not None:
            self._tree = self._catalog.apply_update(patch)
        else:
            self._tree = upsert_tree([self._tree], patch)[0]

    # explicit save and delete

    async def save(self) -> bool:
        try:
            if self._closed:
                raise TreeError("Builder is closed.")
            if self.read_only:
                raise ReadOnlyError("This tree is read-only.")
            if self._state is BuilderState.LOADING:
                raise TreeError("Tree is still loading.")
            if self._explicit_saving:
                raise TreeError("A save is already running.")
            if not self._form.title.strip():
                raise ValidationError("A tree title is required.")
        except TreeError as exc:
            self._report(exc, "save_failed")
            return False

        selection = self._selection
        previous = BuilderState.READY if self._state is BuilderState.SAVING else self._state
        self._explicit_saving = True
        self._state = BuilderState.SAVING
        try:
            await self._scheduler.wait_idle()
            self._scheduler.discard_pending()
            revision = self._revision
            people = self._graph.snapshot()
            form = self._form.model_copy()
            if self._tree is None:
                gedcom = build_gedcom(people, self.locale, self.translate) if people else None
                tree_id = await self._client.create_tree(form, gedcom)
                self._tree = Tree(id=tree_id, title=form.title)
            else:
                gedcom = build_gedcom(people, self.locale, self.translate) if self._dirty else None
                await self._client.update_tree(self._tree.id, form, gedcom)
        except TreeError as exc:
            self._explicit_saving = False
            if selection == self._selection:
                self._state = BuilderState.DIRTY if self._dirty else previous
                if self._scheduler.has_pending and self._tree is not None:
                    self._scheduler.schedule(self._snapshot())
                self._report(exc, "save_failed")
            return False
        self._explicit_saving = False

        if selection != self._selection:
            logger.info("Tree saved after the session moved on")
            return True
        self._scope = TreeScope.MINE
        self._mirror(form, has_gedcom=gedcom is not None)
        if self._revision == revision:
            self._dirty = False
            self._state = BuilderState.READY
        else:
            self._state = BuilderState.DIRTY
            self._scheduler.schedule(self._snapshot())
        self._last_error = None
        self._notify("tree_saved", "Tree saved.")
        return True

    async def delete_tree(self) -> bool:
        try:
            if self._tree is None:
                raise ValidationError("No tree selected.")
            if self.read_only:
                raise ReadOnlyError("This tree is read-only.")
        except TreeError as exc:
            self._report(exc, "delete_failed")
            return False

        tree_id = self._tree.id
        self._scheduler.cancel()
        try:
            await self._client.delete_tree(tree_id)
        except TreeError as exc:
            if self._dirty and self._tree is not None and self._tree.id == tree_id:
                self._scheduler.schedule(self._snapshot())
            self._report(exc, "delete_failed")
            return False
        if self._catalog is not None:
            self._catalog.remove(tree_id)
        if self._tree is not None and self._tree.id == tree_id:
            self.clear()
        self._notify("tree_deleted", "Tree deleted.")
        return True

    def export_gedcom(self) -> str | None:
        try:
            return build_gedcom(self._graph.snapshot(), self.locale, self.translate)
        except TreeError as exc:
            self._report(exc, "export_failed")
            return None
