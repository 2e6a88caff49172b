from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from enum import Enum

NAME_LOCALE_FALLBACK = ("en", "fr", "ar", "es")
RELATION_FIELDS = frozenset({"father", "mother", "spouse", "children"})


class Gender(str, Enum):
    MALE = "Male"
    FEMALE = "Female"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, value: object) -> Gender:
        if isinstance(value, Gender):
            return value
        normalized = str(value or "").strip().lower()
        if normalized.startswith("m"):
            return cls.MALE
        if normalized.startswith("f"):
            return cls.FEMALE
        return cls.UNKNOWN

    @property
    def code(self) -> str:
        return {"Male": "M", "Female": "F"}.get(self.value, "U")


@dataclass
class Person:
    id: str
    names: dict[str, str] = field(default_factory=dict)
    gender: Gender = Gender.UNKNOWN
    birth_year: str = ""
    birth_place: str = ""
    death_year: str = ""
    death_place: str = ""
    details: str = ""
    profession: str = ""
    archive_source: str = ""
    document_code: str = ""
    reliability: str = ""
    color: str = ""
    father: str | None = None
    mother: str | None = None
    spouse: str | None = None
    children: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.id = str(self.id or "")
        self.gender = Gender.parse(self.gender)

    def display_name(self, locale: str = "en", fallback: str = "Unknown") -> str:
        for key in (locale, *NAME_LOCALE_FALLBACK):
            value = (self.names.get(key) or "").strip()
            if value:
                return value
        for value in self.names.values():
            if value and value.strip():
                return value.strip()
        return fallback

    def name_locale(self, locale: str = "en") -> str | None:
        for key in (locale, *NAME_LOCALE_FALLBACK):
            if (self.names.get(key) or "").strip():
                return key
        for key in sorted(self.names):
            if (self.names[key] or "").strip():
                return key
        return None

    def parent_ids(self) -> list[str]:
        return [pid for pid in (self.father, self.mother) if pid]

    def copy(self) -> Person:
        return replace(self, names=dict(self.names), children=list(self.children))


def attribute_fields() -> set[str]:
    return {f.name for f in fields(Person)} - RELATION_FIELDS - {"id"}
