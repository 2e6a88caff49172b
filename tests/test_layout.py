from rootstree.models import Person
from rootstree.services.layout import CHILD, COUPLE, Link, compute_generations, relationship_links


def _people():
    return [
        Person(id="a", names={"en": "A"}, spouse="b", children=["c"]),
        Person(id="b", names={"en": "B"}, spouse="a", children=["c"]),
        Person(id="c", names={"en": "C"}, father="a", mother="b", spouse="d", children=["e"]),
        Person(id="d", names={"en": "D"}, spouse="c"),
        Person(id="e", names={"en": "E"}, father="c"),
    ]


def test_relationship_links_dedupes_couples():
    links = relationship_links(_people())

    assert Link("a", "c", CHILD, mate="b") in links
    assert Link("c", "e", CHILD) in links
    assert [link for link in links if link.kind == COUPLE] == [
        Link("a", "b", COUPLE),
        Link("c", "d", COUPLE),
    ]
    assert not any(link.source == "b" and link.kind == CHILD for link in links)


def test_compute_generations_levels_spouses():
    generations = compute_generations(_people())
    assert generations == {"a": 0, "b": 0, "c": 1, "d": 1, "e": 2}


def test_compute_generations_stops_after_max_passes():
    people = [
        Person(id="x", names={"en": "X"}),
        Person(id="y", names={"en": "Y"}),
    ]
    looping = [Link("x", "y", CHILD), Link("y", "x", CHILD)]
    generations = compute_generations(people, looping, max_passes=5)
    assert max(generations.values()) <= 10
