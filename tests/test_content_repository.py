import asyncio

import pytest

from learnmatch.errors import NotFoundError
from learnmatch.models import ContentKind, Roadmap, SuggestionEntry
from learnmatch.stores import InMemoryContentRepository
from learnmatch.stores.content import merge_entries, upsert_entry

from .utils import make_course, make_roadmap, make_video


def entry(content_id: str, node_id: str = "n1", status: bool = False):
    return SuggestionEntry(content_id=content_id, node_id=node_id, status=status)


def test_merge_entries_skips_existing_pairs():
    ledger = [entry("c1"), entry("c2", status=True)]
    added = merge_entries(
        ledger, [entry("c2"), entry("c3"), entry("c1", node_id="n2"), entry("c3")]
    )
    assert [(e.content_id, e.node_id) for e in added] == [("c3", "n1"), ("c1", "n2")]
    assert len(ledger) == 4
    # existing entries keep their status
    assert ledger[1].status is True


def test_upsert_entry_appends_then_updates():
    ledger: list[SuggestionEntry] = []
    upsert_entry(ledger, "c1", "n1", True)
    assert ledger == [entry("c1", status=True)]
    upsert_entry(ledger, "c1", "n1", False)
    assert ledger == [entry("c1", status=False)]
    upsert_entry(ledger, "c1", "n1", False)
    assert len(ledger) == 1


async def test_get_and_get_many():
    repository = InMemoryContentRepository(
        [make_course("1"), make_course("2"), make_video("v1"), make_roadmap("r1")]
    )
    course = await repository.get(ContentKind.COURSE, "1")
    assert course is not None
    assert course.title == "Intro to Go"
    assert await repository.get(ContentKind.VIDEO, "1") is None

    found = await repository.get_many(ContentKind.COURSE, ["2", "missing", "1"])
    assert sorted(found) == ["1", "2"]
    assert await repository.get_many(ContentKind.COURSE, ["r1"]) == {}


async def test_returned_entities_are_copies():
    repository = InMemoryContentRepository([make_course("1")])
    course = await repository.get(ContentKind.COURSE, "1")
    assert course is not None
    course.title = "changed"
    again = await repository.get(ContentKind.COURSE, "1")
    assert again is not None
    assert again.title == "Intro to Go"


async def test_get_roadmap_checks_owner():
    repository = InMemoryContentRepository([make_roadmap("r1", owner_id="user-1")])
    assert await repository.get_roadmap("r1") is not None
    assert await repository.get_roadmap("r1", "user-1") is not None
    assert await repository.get_roadmap("r1", "user-2") is None
    assert await repository.get_roadmap("missing") is None


async def test_append_suggestions_deduplicates():
    repository = InMemoryContentRepository([make_roadmap("r1")])
    added = await repository.append_suggestions(
        "r1", ContentKind.COURSE, [entry("c1"), entry("c2")]
    )
    assert len(added) == 2
    added = await repository.append_suggestions(
        "r1", ContentKind.COURSE, [entry("c2"), entry("c3")]
    )
    assert [e.content_id for e in added] == ["c3"]

    roadmap = await repository.get_roadmap("r1")
    assert isinstance(roadmap, Roadmap)
    assert [e.content_id for e in roadmap.suggested_courses] == ["c1", "c2", "c3"]
    assert roadmap.suggested_videos == []


async def test_concurrent_appends_never_duplicate():
    repository = InMemoryContentRepository([make_roadmap("r1")])
    await asyncio.gather(
        *[
            repository.append_suggestions(
                "r1", ContentKind.VIDEO, [entry("v1"), entry("v2")]
            )
            for _ in range(10)
        ]
    )
    roadmap = await repository.get_roadmap("r1")
    assert roadmap is not None
    assert [e.content_id for e in roadmap.suggested_videos] == ["v1", "v2"]


async def test_set_suggestion_status():
    repository = InMemoryContentRepository([make_roadmap("r1")])
    await repository.set_suggestion_status("r1", ContentKind.COURSE, "c1", "n1", True)
    updated = await repository.set_suggestion_status(
        "r1", ContentKind.COURSE, "c1", "n1", False
    )
    assert updated == entry("c1", status=False)
    roadmap = await repository.get_roadmap("r1")
    assert roadmap is not None
    assert roadmap.suggested_courses == [entry("c1", status=False)]


async def test_ledger_writes_need_a_roadmap():
    repository = InMemoryContentRepository()
    with pytest.raises(NotFoundError):
        await repository.append_suggestions("missing", ContentKind.COURSE, [entry("c1")])
    with pytest.raises(NotFoundError):
        await repository.set_suggestion_status(
            "missing", ContentKind.COURSE, "c1", "n1", True
        )


async def test_roadmaps_have_no_roadmap_ledger():
    repository = InMemoryContentRepository([make_roadmap("r1")])
    with pytest.raises(ValueError):
        await repository.append_suggestions("r1", ContentKind.ROADMAP, [entry("r2")])


async def test_save_and_delete():
    repository = InMemoryContentRepository()
    await repository.save(make_video("v1"))
    assert await repository.get(ContentKind.VIDEO, "v1") is not None
    assert await repository.delete(ContentKind.VIDEO, "v1") is True
    assert await repository.delete(ContentKind.VIDEO, "v1") is False
