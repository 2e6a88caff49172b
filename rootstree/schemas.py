from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator, model_validator
from pydantic.alias_generators import to_camel


class TreeScope(str, Enum):
    MINE = "my"
    PUBLIC = "public"


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


def _owner_label(raw: Any) -> str | None:
    if isinstance(raw, dict):
        return raw.get("fullName") or raw.get("email") or None
    if raw is None or raw == "":
        return None
    return str(raw)


class Tree(_CamelModel):
    id: str
    title: str = ""
    description: str | None = None
    archive_source: str | None = None
    document_code: str | None = None
    is_public: bool = False
    has_gedcom: bool = False
    owner: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @model_validator(mode="before")
    @classmethod
    def _normalize_owner(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        payload = dict(data)
        raw = payload.get("owner")
        if raw is None:
            raw = payload.get("owner_name")
        payload["owner"] = _owner_label(raw)
        return payload

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value

    @field_validator("title", mode="before")
    @classmethod
    def _blank_title(cls, value: Any) -> Any:
        return "" if value is None else value


class TreeForm(_CamelModel):
    title: str = ""
    description: str = ""
    archive_source: str = ""
    document_code: str = ""
    is_public: bool = False

    @classmethod
    def from_tree(cls, tree: Tree | None) -> TreeForm:
        if tree is None:
            return cls()
        return cls(
            title=tree.title or "",
            description=tree.description or "",
            archive_source=tree.archive_source or "",
            document_code=tree.document_code or "",
            is_public=tree.is_public,
        )

    def multipart_fields(self) -> dict[str, str]:
        data = {
            "title": self.title.strip(),
            "description": self.description or "",
        }
        if self.archive_source.strip():
            data["archiveSource"] = self.archive_source.strip()
        if self.document_code.strip():
            data["documentCode"] = self.document_code.strip()
        data["isPublic"] = "true" if self.is_public else "false"
        return data


class AuthEvent(BaseModel):
    kind: str
    path: str
    status_code: int | None = None
