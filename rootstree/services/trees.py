from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

from rootstree.schemas import Tree, TreeScope

logger = logging.getLogger(__name__)


def merge_trees(*sources: Iterable[Tree]) -> list[Tree]:
    merged: dict[str, Tree] = {}
    for source in sources:
        for tree in source:
            if tree is not None:
                merged[tree.id] = tree
    return list(merged.values())


def _patched(existing: Tree | None, patch: dict[str, Any]) -> Tree:
    if existing is None:
        return Tree.model_validate(patch)
    return Tree.model_validate({**existing.model_dump(), **patch})


def upsert_tree(trees: list[Tree], patch: dict[str, Any]) -> list[Tree]:
    tree_id = str(patch["id"])
    existing = next((tree for tree in trees if tree.id == tree_id), None)
    merged = _patched(existing, {**patch, "id": tree_id})
    return [merged] + [tree for tree in trees if tree.id != tree_id]


def apply_tree_update(
    my_trees: list[Tree],
    public_trees: list[Tree],
    patch: dict[str, Any],
) -> tuple[list[Tree], list[Tree]]:
    patch = {**patch, "id": str(patch["id"]), "updated_at": datetime.now(UTC)}
    my_trees = upsert_tree(my_trees, patch)
    without = [tree for tree in public_trees if tree.id != patch["id"]]
    if not patch.get("is_public"):
        return my_trees, without
    existing = next((tree for tree in public_trees if tree.id == patch["id"]), None)
    base = existing.model_dump() if existing else {}
    return my_trees, upsert_tree(without, {**base, **patch})


def filter_trees(trees: Iterable[Tree], query: str = "") -> list[Tree]:
    needle = query.strip().casefold()
    if not needle:
        return list(trees)
    return [
        tree
        for tree in trees
        if needle in (tree.title or "").casefold() or needle in (tree.owner or "").casefold()
    ]


class TreeCatalog:
    def __init__(self, my_trees: list[Tree] | None = None, public_trees: list[Tree] | None = None):
        self.my_trees = list(my_trees or [])
        self.public_trees = list(public_trees or [])

    def trees(self, scope: TreeScope | str) -> list[Tree]:
        return self.my_trees if TreeScope(scope) is TreeScope.MINE else self.public_trees

    def find(self, tree_id: str) -> tuple[Tree, TreeScope] | None:
        for scope in (TreeScope.MINE, TreeScope.PUBLIC):
            for tree in self.trees(scope):
                if tree.id == str(tree_id):
                    return tree, scope
        return None

    async def refresh(self, client, admin: bool = False) -> list[Exception]:
        mine, public = await asyncio.gather(
            client.list_trees(TreeScope.MINE, admin=admin),
            client.list_trees(TreeScope.PUBLIC),
            return_exceptions=True,
        )
        errors: list[Exception] = []
        for scope, result in ((TreeScope.MINE, mine), (TreeScope.PUBLIC, public)):
            if isinstance(result, Exception):
                logger.warning("Failed to load %s trees: %s", scope.value, result)
                errors.append(result)
            elif scope is TreeScope.MINE:
                self.my_trees = merge_trees(result)
            else:
                self.public_trees = merge_trees(result)
        return errors

    def apply_update(self, patch: dict[str, Any]) -> Tree:
        self.my_trees, self.public_trees = apply_tree_update(self.my_trees, self.public_trees, patch)
        return self.my_trees[0]

    def remove(self, tree_id: str) -> None:
        tree_id = str(tree_id)
        self.my_trees = [tree for tree in self.my_trees if tree.id != tree_id]
        self.public_trees = [tree for tree in self.public_trees if tree.id != tree_id]
