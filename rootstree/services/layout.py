from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from rootstree.models import Person

CHILD = "child"
COUPLE = "couple"
MAX_GENERATION_PASSES = 50


@dataclass(frozen=True)
class Link:
    source: str
    target: str
    kind: str
    mate: str | None = None


def relationship_links(people: Iterable[Person]) -> list[Link]:
    people = list(people)
    known = {person.id for person in people}
    by_id = {person.id: person for person in people}
    links: list[Link] = []
    couples: set[frozenset[str]] = set()
    child_pairs: set[tuple[str, str]] = set()

    def add_couple(first: str, second: str) -> None:
        if first == second or first not in known or second not in known:
            return
        pair = frozenset((first, second))
        if pair in couples:
            return
        couples.add(pair)
        links.append(Link(*sorted(pair), kind=COUPLE))

    def add_child(parent_id: str, child_id: str, mate: str | None = None) -> None:
        if (parent_id, child_id) in child_pairs:
            return
        child_pairs.add((parent_id, child_id))
        links.append(Link(parent_id, child_id, kind=CHILD, mate=mate))

    for child in people:
        father = child.father if child.father in known else None
        mother = child.mother if child.mother in known else None
        if father and mother:
            add_couple(father, mother)
            add_child(father, child.id, mate=mother)
            child_pairs.add((mother, child.id))
            continue
        for parent_id in (father, mother):
            if parent_id:
                add_child(parent_id, child.id)

    # children lists only count for children without any parent field
    for parent in people:
        for child_id in parent.children:
            child = by_id.get(child_id)
            if child is None or child.father or child.mother:
                continue
            add_child(parent.id, child_id)

    for person in people:
        if person.spouse:
            add_couple(person.id, person.spouse)
    return links


def compute_generations(
    people: Iterable[Person],
    links: list[Link] | None = None,
    max_passes: int = MAX_GENERATION_PASSES,
) -> dict[str, int]:
    people = list(people)
    if links is None:
        links = relationship_links(people)
    generations = {person.id: 0 for person in people}
    changed = True
    passes = 0
    while changed and passes < max_passes:
        changed = False
        passes += 1
        for link in links:
            source = generations.get(link.source)
            target = generations.get(link.target)
            if source is None or target is None:
                continue
            if link.kind == CHILD:
                if target < source + 1:
                    generations[link.target] = source + 1
                    changed = True
            elif link.kind == COUPLE and source != target:
                level = max(source, target)
                generations[link.source] = generations[link.target] = level
                changed = True
    return generations
