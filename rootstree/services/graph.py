from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from uuid import uuid4

from rootstree.errors import CycleError, ValidationError
from rootstree.models import Gender, Person, attribute_fields

logger = logging.getLogger(__name__)

PARENT_ROLES = ("father", "mother")


def _known_parents(by_id: Mapping[str, Person], person_id: str) -> list[str]:
    return [pid for pid in by_id[person_id].parent_ids() if pid in by_id]


def find_ancestry_cycle(by_id: Mapping[str, Person]) -> list[str] | None:
    state: dict[str, int] = {}
    for start in by_id:
        if start in state:
            continue
        state[start] = 1
        path = [start]
        stack = [iter(_known_parents(by_id, start))]
        while stack:
            parent_id = next(stack[-1], None)
            if parent_id is None:
                state[path.pop()] = 2
                stack.pop()
                continue
            mark = state.get(parent_id)
            if mark == 1:
                return path[path.index(parent_id):] + [parent_id]
            if mark is None:
                state[parent_id] = 1
                path.append(parent_id)
                stack.append(iter(_known_parents(by_id, parent_id)))
    return None


def relationship_problems(people: Iterable[Person]) -> list[str]:
    problems: list[str] = []
    by_id: dict[str, Person] = {}
    for person in people:
        if not person.id:
            problems.append("person without an id")
            continue
        if person.id in by_id:
            problems.append(f"duplicate person id {person.id!r}")
            continue
        by_id[person.id] = person

    for person in by_id.values():
        for relation in ("father", "mother", "spouse"):
            target = getattr(person, relation)
            if not target:
                continue
            if target == person.id:
                problems.append(f"{person.id!r} is their own {relation}")
            elif target not in by_id:
                problems.append(f"{person.id!r} references unknown {relation} {target!r}")
        if person.father and person.father == person.mother:
            problems.append(f"{person.id!r} has the same father and mother")
        if len(set(person.children)) != len(person.children):
            problems.append(f"{person.id!r} lists a child more than once")
        for child_id in person.children:
            child = by_id.get(child_id)
            if child is None:
                problems.append(f"{person.id!r} references unknown child {child_id!r}")
            elif person.id not in child.parent_ids():
                problems.append(f"{person.id!r} lists {child_id!r} as a child but is not their parent")
        for parent_id in person.parent_ids():
            parent = by_id.get(parent_id)
            if parent is not None and person.id not in parent.children:
                problems.append(f"{parent_id!r} does not list {person.id!r} among their children")

    cycle = find_ancestry_cycle(by_id)
    if cycle:
        problems.append("ancestry cycle: " + " -> ".join(cycle))
    return problems


class PersonGraph:
    def __init__(self, people: Iterable[Person] = ()):
        self._people: dict[str, Person] = {}
        self.repairs: list[str] = []
        for person in people:
            if not person.id:
                raise ValidationError("Person id is required.")
            if person.id in self._people:
                raise ValidationError(f"Duplicate person id {person.id!r}.")
            self._people[person.id] = person.copy()
        self._reconcile()

    def __len__(self) -> int:
        return len(self._people)

    def __contains__(self, person_id: object) -> bool:
        return person_id in self._people

    def __iter__(self) -> Iterator[Person]:
        return (person.copy() for person in self._people.values())

    def ids(self) -> list[str]:
        return list(self._people)

    def get(self, person_id: str) -> Person | None:
        person = self._people.get(person_id)
        return person.copy() if person else None

    def snapshot(self) -> list[Person]:
        return [person.copy() for person in self._people.values()]

    @staticmethod
    def new_id() -> str:
        return uuid4().hex[:12]

    # queries

    def ancestors(self, person_id: str) -> set[str]:
        self._require(person_id)
        seen: set[str] = set()
        queue = deque(self._people[person_id].parent_ids())
        while queue:
            current = queue.popleft()
            if current in seen or current not in self._people:
                continue
            seen.add(current)
            queue.extend(self._people[current].parent_ids())
        return seen

    def descendants(self, person_id: str) -> set[str]:
        self._require(person_id)
        seen: set[str] = set()
        queue = deque(self._people[person_id].children)
        while queue:
            current = queue.popleft()
            if current in seen or current not in self._people:
                continue
            seen.add(current)
            queue.extend(self._people[current].children)
        return seen

    def would_create_cycle(self, parent_id: str, child_id: str) -> bool:
        return parent_id == child_id or child_id in self.ancestors(parent_id)

    def search(self, query: str = "", locale: str = "en") -> list[Person]:
        needle = query.strip().casefold()
        ranked = sorted(self._people.values(), key=lambda p: p.display_name(locale).casefold())
        return [
            person.copy()
            for person in ranked
            if not needle or needle in person.display_name(locale).casefold()
        ]

    # mutations

    def add_person(self, person: Person) -> Person:
        new = person.copy()
        if not new.id:
            new.id = self.new_id()
        if new.id in self._people:
            raise ValidationError(f"Person {new.id!r} already exists.")
        father, mother, spouse = new.father, new.mother, new.spouse
        children = list(dict.fromkeys(new.children))
        new.father = new.mother = new.spouse = None
        new.children = []
        with self._transaction():
            self._people[new.id] = new
            if father and mother and father == mother:
                raise ValidationError("Father and mother cannot be the same person.")
            if father:
                self.connect_parent(father, new.id, role="father")
            if mother:
                self.connect_parent(mother, new.id, role="mother")
            if spouse:
                self.set_spouse(new.id, spouse)
            for child_id in children:
                self.connect_parent(new.id, child_id)
        return self._people[new.id].copy()

    def update_person(self, person_id: str, **changes) -> Person:
        unknown = set(changes) - attribute_fields()
        if unknown:
            raise ValidationError(f"Cannot update {', '.join(sorted(unknown))} with update_person.")
        person = self._require(person_id)
        for key, value in changes.items():
            if key == "names":
                value = {str(k): str(v) for k, v in dict(value or {}).items()}
            elif key == "gender":
                value = Gender.parse(value)
            else:
                value = "" if value is None else str(value)
            setattr(person, key, value)
        return person.copy()

    def remove_person(self, person_id: str) -> Person:
        removed = self._require(person_id)
        with self._transaction():
            del self._people[person_id]
            for other in self._people.values():
                if other.father == person_id:
                    other.father = None
                if other.mother == person_id:
                    other.mother = None
                if other.spouse == person_id:
                    other.spouse = None
                if person_id in other.children:
                    other.children = [cid for cid in other.children if cid != person_id]
        return removed.copy()

    def connect_parent(self, parent_id: str, child_id: str, role: str | None = None) -> Person:
        parent = self._require(parent_id)
        child = self._require(child_id)
        if parent_id == child_id:
            raise CycleError("A person cannot be their own parent.")
        if role is None and parent_id in child.parent_ids():
            return child.copy()
        slot = self._parent_slot(parent, child, role)
        other_slot = "mother" if slot == "father" else "father"
        if getattr(child, other_slot) == parent_id:
            raise ValidationError("Father and mother cannot be the same person.")
        if getattr(child, slot) == parent_id:
            return child.copy()
        if self.would_create_cycle(parent_id, child_id):
            raise CycleError(f"{child_id!r} is already an ancestor of {parent_id!r}.")
        with self._transaction():
            previous = getattr(child, slot)
            if previous and previous in self._people:
                old_parent = self._people[previous]
                old_parent.children = [cid for cid in old_parent.children if cid != child_id]
            setattr(child, slot, parent_id)
            if child_id not in parent.children:
                parent.children.append(child_id)
        logger.debug("Connected %s as %s of %s", parent_id, slot, child_id)
        return child.copy()

    def disconnect_parent(self, parent_id: str, child_id: str) -> bool:
        parent = self._require(parent_id)
        child = self._require(child_id)
        if parent_id not in child.parent_ids() and child_id not in parent.children:
            return False
        with self._transaction():
            for slot in PARENT_ROLES:
                if getattr(child, slot) == parent_id:
                    setattr(child, slot, None)
            parent.children = [cid for cid in parent.children if cid != child_id]
        return True

    def set_spouse(self, person_id: str, spouse_id: str) -> None:
        first = self._require(person_id)
        second = self._require(spouse_id)
        if person_id == spouse_id:
            raise ValidationError("A person cannot be their own spouse.")
        with self._transaction():
            for other in self._people.values():
                if other.id not in (person_id, spouse_id) and other.spouse in (person_id, spouse_id):
                    other.spouse = None
            first.spouse = spouse_id
            second.spouse = person_id

    def clear_spouse(self, person_id: str) -> bool:
        person = self._require(person_id)
        partner_id = person.spouse
        if not partner_id:
            return False
        person.spouse = None
        partner = self._people.get(partner_id)
        if partner and partner.spouse == person_id:
            partner.spouse = None
        return True

    # internals

    def _require(self, person_id: str) -> Person:
        person = self._people.get(person_id)
        if person is None:
            raise ValidationError(f"Unknown person {person_id!r}.")
        return person

    @staticmethod
    def _parent_slot(parent: Person, child: Person, role: str | None) -> str:
        if role is not None:
            if role not in PARENT_ROLES:
                raise ValidationError(f"Unknown parent role {role!r}.")
            return role
        if parent.gender is Gender.MALE:
            return "father"
        if parent.gender is Gender.FEMALE:
            return "mother"
        if child.father is None:
            return "father"
        if child.mother is None:
            return "mother"
        return "father"

    @contextmanager
    def _transaction(self):
        backup = {pid: person.copy() for pid, person in self._people.items()}
        try:
            yield
        except Exception:
            self._people = backup
            raise

    def _repair(self, message: str) -> None:
        logger.warning("Graph repair: %s", message)
        self.repairs.append(message)

    def _free_slot(self, parent: Person, child: Person) -> str | None:
        preferred = {Gender.MALE: ("father",), Gender.FEMALE: ("mother",)}.get(parent.gender, PARENT_ROLES)
        for slot in preferred:
            if getattr(child, slot) is None:
                return slot
        return None

    def _reconcile(self) -> None:
        people = self._people
        for person in people.values():
            for relation in ("father", "mother", "spouse"):
                target = getattr(person, relation)
                if target and (target == person.id or target not in people):
                    self._repair(f"cleared {relation} {target!r} of {person.id!r}")
                    setattr(person, relation, None)
            if person.father and person.father == person.mother:
                self._repair(f"cleared duplicate mother {person.mother!r} of {person.id!r}")
                person.mother = None

        for person in people.values():
            kept: list[str] = []
            for child_id in person.children:
                child = people.get(child_id)
                if child is None or child_id == person.id or child_id in kept:
                    self._repair(f"dropped child {child_id!r} of {person.id!r}")
                    continue
                if person.id not in child.parent_ids():
                    slot = self._free_slot(person, child)
                    if slot is None:
                        self._repair(f"dropped child {child_id!r} of {person.id!r}: parent slots taken")
                        continue
                    setattr(child, slot, person.id)
                kept.append(child_id)
            person.children = kept

        for person in people.values():
            for parent_id in person.parent_ids():
                parent = people[parent_id]
                if person.id not in parent.children:
                    parent.children.append(person.id)

        cycle = find_ancestry_cycle(people)
        while cycle:
            child_id, parent_id = cycle[-2], cycle[-1]
            self._repair(f"broke ancestry cycle between {child_id!r} and {parent_id!r}")
            child = people[child_id]
            for slot in PARENT_ROLES:
                if getattr(child, slot) == parent_id:
                    setattr(child, slot, None)
            parent = people[parent_id]
            parent.children = [cid for cid in parent.children if cid != child_id]
            cycle = find_ancestry_cycle(people)
