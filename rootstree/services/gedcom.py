from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from rootstree.errors import BuildError, FormatError, GedcomTooLargeError, ValidationError
from rootstree.models import Gender, Person
from rootstree.services.graph import find_ancestry_cycle, relationship_problems
from rootstree.version import get_app_version

logger = logging.getLogger(__name__)

GEDCOM_VERSION = "5.5.1"
SOURCE_SYSTEM = "RootsMaghreb"
DEFAULT_LOCALE = "en"
MAX_GEDCOM_BYTES = 50 * 1024 * 1024
GEDCOM_EXTENSIONS = (".ged", ".gedcom")
LINE_BREAK = "\r\n"

Translate = Callable[[str, str], str]

_LINE_RE = re.compile(r"^(\d+)\s+(?:(@[^@\s]+@)\s+)?([A-Za-z0-9_]+)(?:\s(.*))?$")
_LINE_SPLIT_RE = re.compile(r"\r\n|\n|\r")
_INDI_RE = re.compile(r"^\s*0\s+@[^@\s]+@\s+INDI\b", re.MULTILINE)
_SLASH_NAME_RE = re.compile(r"^(.*?)/(.*?)/(.*)$")


def default_translate(key: str, fallback: str) -> str:
    return fallback


def normalize_spaces(value: str | None) -> str:
    return " ".join((value or "").split())


@dataclass
class SplitName:
    full: str
    given: str
    surname: str


def split_name(raw: str | None) -> SplitName:
    value = normalize_spaces(raw)
    match = _SLASH_NAME_RE.match(value)
    if match:
        given, surname, suffix = (normalize_spaces(part) for part in match.groups())
        full = " ".join(part for part in (given, surname, suffix) if part)
        return SplitName(full=full, given=given, surname=surname)
    if "," in value:
        surname, given = (normalize_spaces(part) for part in value.split(",", 1))
        if surname and given:
            return SplitName(full=f"{given} {surname}", given=given, surname=surname)
        value = surname or given
    tokens = value.split(" ")
    if len(tokens) >= 2:
        return SplitName(full=value, given=" ".join(tokens[:-1]), surname=tokens[-1])
    return SplitName(full=value, given=value, surname="")


@dataclass
class GedcomLine:
    number: int
    level: int
    pointer: str | None
    tag: str
    value: str
    raw: str


@dataclass
class GedcomParseResult:
    version: str
    people: list[Person]
    warnings: list[str] = field(default_factory=list)
    locale: str = DEFAULT_LOCALE


def _parse_gedcom_line(number: int, line: str) -> GedcomLine:
    match = _LINE_RE.match(line)
    if not match:
        raise FormatError("Invalid GEDCOM line.", number, line)
    level, pointer, tag, value = match.groups()
    return GedcomLine(
        number=number,
        level=int(level),
        pointer=pointer,
        tag=tag.upper(),
        value=value or "",
        raw=line,
    )


def tokenize(text: str, warn: Callable[[str], None] | None = None) -> list[GedcomLine]:
    """Split GEDCOM text into lines.

    A malformed first line always raises ``FormatError``. Without ``warn`` any
    later malformed line raises too; with it, the level-0 record holding the
    line is dropped and reported.
    """
    lines: list[GedcomLine] = []
    previous_level: int | None = None
    record_start = 0
    broken = False
    for number, raw_line in enumerate(_LINE_SPLIT_RE.split(text.lstrip("\ufeff")), start=1):
        line = raw_line.strip()
        if not line:
            continue
        try:
            parsed = _parse_gedcom_line(number, line)
            if previous_level is None and parsed.level != 0:
                raise FormatError("First record must start at level 0.", number, line)
            if previous_level is not None and parsed.level > previous_level + 1:
                raise FormatError(
                    f"Level jumps from {previous_level} to {parsed.level}.", number, line
                )
        except FormatError as exc:
            if warn is None or previous_level is None:
                raise
            if not broken:
                head = lines[record_start]
                warn(f"{exc} Record {head.pointer or head.tag} skipped.")
                broken = True
            continue
        if parsed.level == 0:
            if broken:
                del lines[record_start:]
                broken = False
            record_start = len(lines)
        previous_level = parsed.level
        lines.append(parsed)
    if broken:
        del lines[record_start:]
    return lines


def _records(lines: list[GedcomLine]) -> list[tuple[GedcomLine, list[GedcomLine]]]:
    records: list[tuple[GedcomLine, list[GedcomLine]]] = []
    for line in lines:
        if line.level == 0:
            records.append((line, []))
        else:
            records[-1][1].append(line)
    return records


def _new_individual() -> dict:
    return {
        "uid": "",
        "names": [],
        "sex": "",
        "birth_year": "",
        "birth_place": "",
        "death_year": "",
        "death_place": "",
        "notes": [],
        "profession": "",
        "sources": [],
        "refs": [],
        "reliability": "",
        "color": "",
        "famc": [],
    }


def _set_once(record: dict, key: str, value: str) -> None:
    value = value.strip()
    if value and not record[key]:
        record[key] = value


def _read_header(body: list[GedcomLine]) -> tuple[str | None, str | None]:
    version = None
    locale = None
    context = None
    for line in body:
        if line.level == 1:
            context = line.tag
            if line.tag == "LANG" and line.value.strip():
                locale = line.value.strip()
        elif line.level == 2 and context == "GEDC" and line.tag == "VERS":
            version = line.value.strip() or version
    return version, locale


def _read_individual(body: list[GedcomLine]) -> dict:
    record = _new_individual()
    context = None
    name: dict | None = None
    for line in body:
        tag, value = line.tag, line.value
        if line.level == 1:
            context = tag
            name = None
            if tag == "_UID":
                _set_once(record, "uid", value)
            elif tag == "NAME":
                name = {"value": value, "givn": "", "surn": "", "lang": ""}
                record["names"].append(name)
            elif tag == "SEX":
                _set_once(record, "sex", value)
            elif tag in {"BIRT", "DEAT"}:
                if value.strip().upper() != "Y":
                    _set_once(record, "birth_year" if tag == "BIRT" else "death_year", value)
            elif tag == "NOTE":
                record["notes"].append(value)
            elif tag == "OCCU":
                _set_once(record, "profession", value)
            elif tag == "SOUR" and value.strip():
                record["sources"].append(value.strip())
            elif tag in {"REFN", "_DOC"} and value.strip():
                record["refs"].append(value.strip())
            elif tag in {"_RELI", "RELI"}:
                _set_once(record, "reliability", value)
            elif tag in {"_COLOR", "COLOR"}:
                _set_once(record, "color", value)
            elif tag == "FAMC" and value.strip():
                record["famc"].append(value.strip())
        elif line.level == 2:
            if context == "NAME" and name is not None and tag in {"GIVN", "SURN", "LANG"}:
                name[tag.lower()] = value.strip()
            elif context in {"BIRT", "DEAT"} and tag in {"DATE", "PLAC"}:
                prefix = "birth" if context == "BIRT" else "death"
                key = f"{prefix}_year" if tag == "DATE" else f"{prefix}_place"
                if value.strip():
                    record[key] = value.strip()
            elif context == "NOTE" and tag == "CONT":
                record["notes"][-1] += "\n" + value
            elif context == "NOTE" and tag == "CONC":
                record["notes"][-1] += value
    return record


def _read_family(body: list[GedcomLine]) -> dict:
    family = {"husb": None, "wife": None, "chil": [], "married": True}
    for line in body:
        if line.level != 1:
            continue
        value = line.value.strip()
        if line.tag == "HUSB" and value:
            family["husb"] = family["husb"] or value
        elif line.tag == "WIFE" and value:
            family["wife"] = family["wife"] or value
        elif line.tag == "CHIL" and value:
            family["chil"].append(value)
        elif line.tag == "NO" and value.upper() == "MARR":
            family["married"] = False
    return family


def _record_names(names: list[dict], locale: str) -> dict[str, str]:
    result: dict[str, str] = {}
    for entry in names:
        full = split_name(entry["value"]).full
        if not full:
            full = normalize_spaces(f"{entry['givn']} {entry['surn']}")
        if not full:
            continue
        result.setdefault(entry["lang"] or locale, full)
    return result


def parse_gedcom(text: str) -> GedcomParseResult:
    warnings: list[str] = []

    def warn(message: str) -> None:
        logger.warning("GEDCOM: %s", message)
        warnings.append(message)

    version = "unknown"
    locale = DEFAULT_LOCALE
    individuals: dict[str, dict] = {}
    families: dict[str, dict] = {}

    for header, body in _records(tokenize(text, warn)):
        if header.tag == "HEAD":
            head_version, head_locale = _read_header(body)
            version = head_version or version
            locale = head_locale or locale
        elif header.tag in {"INDI", "FAM"}:
            if not header.pointer:
                warn(f"line {header.number}: {header.tag} record without a pointer skipped")
                continue
            target = individuals if header.tag == "INDI" else families
            if header.pointer in individuals or header.pointer in families:
                warn(f"line {header.number}: duplicate record {header.pointer} skipped")
                continue
            target[header.pointer] = (
                _read_individual(body) if header.tag == "INDI" else _read_family(body)
            )

    people: dict[str, Person] = {}
    xref_ids: dict[str, str] = {}
    for xref, record in individuals.items():
        person_id = record["uid"] or xref.strip("@")
        if person_id in people:
            warn(f"duplicate person id {person_id!r} in {xref} skipped")
            continue
        xref_ids[xref] = person_id
        people[person_id] = Person(
            id=person_id,
            names=_record_names(record["names"], locale),
            gender=Gender.parse(record["sex"]),
            birth_year=record["birth_year"],
            birth_place=record["birth_place"],
            death_year=record["death_year"],
            death_place=record["death_place"],
            details="\n".join(record["notes"]),
            profession=record["profession"],
            archive_source="; ".join(record["sources"]),
            document_code="; ".join(record["refs"]),
            reliability=record["reliability"],
            color=record["color"],
        )

    def resolve(xref: str | None, where: str) -> str | None:
        if xref is None:
            return None
        person_id = xref_ids.get(xref)
        if person_id is None:
            warn(f"{where}: unknown individual {xref} dropped")
        return person_id

    for fam_xref, family in families.items():
        family["husb"] = resolve(family["husb"], fam_xref)
        family["wife"] = resolve(family["wife"], fam_xref)
        family["chil"] = [
            child_id
            for child_id in (resolve(xref, fam_xref) for xref in family["chil"])
            if child_id
        ]

    for xref, person_id in xref_ids.items():
        person = people[person_id]
        family = None
        for fam_xref in individuals[xref]["famc"]:
            if fam_xref in families:
                family = families[fam_xref]
                break
            warn(f"{xref}: unknown family {fam_xref} dropped")
        if family is None:
            family = next((fam for fam in families.values() if person_id in fam["chil"]), None)
        if family is None:
            continue
        father, mother = family["husb"], family["wife"]
        if person_id in (father, mother):
            warn(f"{xref}: self-parent link dropped")
            father = None if father == person_id else father
            mother = None if mother == person_id else mother
        if father and father == mother:
            warn(f"{xref}: same individual as father and mother, mother dropped")
            mother = None
        person.father, person.mother = father, mother

    for family in families.values():
        husband, wife = family["husb"], family["wife"]
        if not family["married"] or not husband or not wife or husband == wife:
            continue
        if people[husband].spouse is None:
            people[husband].spouse = wife
        if people[wife].spouse is None:
            people[wife].spouse = husband

    for family in families.values():
        for child_id in family["chil"]:
            child = people[child_id]
            for parent_id in (family["husb"], family["wife"]):
                if parent_id and parent_id in child.parent_ids():
                    parent = people[parent_id]
                    if child_id not in parent.children:
                        parent.children.append(child_id)
    for person in people.values():
        for parent_id in person.parent_ids():
            parent = people[parent_id]
            if person.id not in parent.children:
                parent.children.append(person.id)

    cycle = find_ancestry_cycle(people)
    if cycle:
        warn("ancestry cycle: " + " -> ".join(cycle))

    return GedcomParseResult(
        version=version,
        people=list(people.values()),
        warnings=warnings,
        locale=locale,
    )


def build_problems(people: list[Person]) -> list[str]:
    problems = relationship_problems(people)
    for person in people:
        if person.id and (person.id != person.id.strip() or _LINE_SPLIT_RE.search(person.id)):
            problems.append(f"{person.id!r} is not a single-line id")
        if not any((value or "").strip() for value in person.names.values()):
            problems.append(f"{person.id!r} has no name")
    return problems


def _one_line(value: str | None) -> str:
    return _LINE_SPLIT_RE.sub(" ", value or "").strip()


def _name_lines(name: str, lang: str) -> list[str]:
    parts = split_name(name.replace("/", " "))
    lines = []
    if parts.surname:
        lines.append(f"1 NAME {parts.given} /{parts.surname}/")
        if parts.given:
            lines.append(f"2 GIVN {parts.given}")
        lines.append(f"2 SURN {parts.surname}")
    else:
        lines.append(f"1 NAME {parts.full}")
    lines.append(f"2 LANG {lang}")
    return lines


def _event_lines(tag: str, year: str, place: str) -> list[str]:
    year, place = _one_line(year), _one_line(place)
    if not year and not place:
        return []
    lines = [f"1 {tag}"]
    if year:
        lines.append(f"2 DATE {year}")
    if place:
        lines.append(f"2 PLAC {place}")
    return lines


def _note_lines(details: str) -> list[str]:
    if not details.strip():
        return []
    first, *rest = [line.rstrip() for line in _LINE_SPLIT_RE.split(details.strip("\r\n"))]
    lines = [f"1 NOTE {first}".rstrip()]
    lines.extend(f"2 CONT {line}".rstrip() for line in rest)
    return lines


_ROLE_RANK = {Gender.MALE: 0, Gender.UNKNOWN: 1, Gender.FEMALE: 2}


def _couple_roles(first: Person, second: Person) -> tuple[str, str]:
    husband, wife = sorted((first, second), key=lambda p: (_ROLE_RANK[p.gender], p.id))
    return husband.id, wife.id


def build_gedcom(
    people: Iterable[Person],
    locale: str = DEFAULT_LOCALE,
    translate: Translate | None = None,
) -> str:
    people = list(people)
    problems = build_problems(people)
    if problems:
        raise BuildError(f"Cannot export GEDCOM: {len(problems)} problem(s) found.", problems)
    translate = translate or default_translate
    by_id = {person.id: person for person in people}
    xrefs = {person.id: f"@I{index}@" for index, person in enumerate(people, start=1)}

    families: dict[tuple[str | None, str | None], list[str]] = {}
    for person in people:
        if person.father or person.mother:
            key = (person.father, person.mother)
            if key not in families:
                anchor = by_id[person.father or person.mother]
                families[key] = [
                    child_id
                    for child_id in anchor.children
                    if (by_id[child_id].father, by_id[child_id].mother) == key
                ]
    couples = {frozenset(key) for key in families if key[0] and key[1]}
    for person in people:
        if person.spouse and frozenset((person.id, person.spouse)) not in couples:
            couples.add(frozenset((person.id, person.spouse)))
            families[_couple_roles(person, by_id[person.spouse])] = []

    fam_xrefs = {key: f"@F{index}@" for index, key in enumerate(families, start=1)}
    famc: dict[str, str] = {}
    fams: dict[str, list[str]] = {}
    for key, children in families.items():
        for child_id in children:
            famc[child_id] = fam_xrefs[key]
        for partner in key:
            if partner:
                fams.setdefault(partner, []).append(fam_xrefs[key])

    lines = [
        "0 HEAD",
        f"1 SOUR {SOURCE_SYSTEM}",
        f"2 VERS {get_app_version()}",
        f"2 NAME {_one_line(translate('gedcom_source_name', 'RootsMaghreb Family Tree'))}",
        "1 GEDC",
        f"2 VERS {GEDCOM_VERSION}",
        "2 FORM LINEAGE-LINKED",
        "1 CHAR UTF-8",
        f"1 LANG {locale}",
    ]

    for person in people:
        lines.append(f"0 {xrefs[person.id]} INDI")
        lines.append(f"1 _UID {person.id}")
        primary = person.name_locale(locale)
        ordered = [primary] + sorted(key for key in person.names if key != primary)
        for key in ordered:
            name = normalize_spaces(person.names.get(key))
            if name:
                lines.extend(_name_lines(name, key))
        lines.append(f"1 SEX {person.gender.code}")
        lines.extend(_event_lines("BIRT", person.birth_year, person.birth_place))
        lines.extend(_event_lines("DEAT", person.death_year, person.death_place))
        lines.extend(_note_lines(person.details))
        for tag, value in (
            ("OCCU", person.profession),
            ("SOUR", person.archive_source),
            ("REFN", person.document_code),
            ("_RELI", person.reliability),
            ("_COLOR", person.color),
        ):
            value = _one_line(value)
            if value:
                lines.append(f"1 {tag} {value}")
        if person.id in famc:
            lines.append(f"1 FAMC {famc[person.id]}")
        for fam_xref in fams.get(person.id, []):
            lines.append(f"1 FAMS {fam_xref}")

    for (husband, wife), fam_xref in fam_xrefs.items():
        lines.append(f"0 {fam_xref} FAM")
        if husband:
            lines.append(f"1 HUSB {xrefs[husband]}")
        if wife:
            lines.append(f"1 WIFE {xrefs[wife]}")
        if husband and wife and by_id[husband].spouse != wife and by_id[wife].spouse != husband:
            lines.append("1 NO MARR")
        for child_id in families[(husband, wife)]:
            lines.append(f"1 CHIL {xrefs[child_id]}")

    lines.append("0 TRLR")
    return LINE_BREAK.join(lines) + LINE_BREAK


def gedcom_size(text: str) -> int:
    return len(text.encode("utf-8"))


def ensure_within_size_limit(text: str, max_bytes: int = MAX_GEDCOM_BYTES) -> int:
    size = gedcom_size(text)
    if size > max_bytes:
        raise GedcomTooLargeError(size, max_bytes)
    return size


def decode_gedcom_bytes(content: bytes) -> str:
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError:
        return content.decode("latin-1")


def has_individuals(text: str) -> bool:
    return bool(_INDI_RE.search(text))


def read_gedcom_upload(filename: str, content: bytes, max_bytes: int = MAX_GEDCOM_BYTES) -> str:
    if not (filename or "").lower().endswith(GEDCOM_EXTENSIONS):
        raise ValidationError("Only .ged and .gedcom files are supported.")
    if len(content) > max_bytes:
        raise GedcomTooLargeError(len(content), max_bytes)
    if not content.strip():
        raise ValidationError("GEDCOM file is empty.")
    text = decode_gedcom_bytes(content)
    if not has_individuals(text):
        raise ValidationError("GEDCOM file contains no individuals.")
    return text
