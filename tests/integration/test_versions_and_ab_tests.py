import pytest

from cmsflow.contracts import ABTestStatus
from cmsflow.errors import NotFound, ValidationError


@pytest.mark.asyncio
async def test_create_version_requires_subject(service):
    with pytest.raises(NotFound):
        await service.create_version("missing", "alice", {"title": {"old": None, "new": "x"}})


@pytest.mark.asyncio
async def test_versions_are_listed_oldest_first(service, scheduler):
    first = await service.create_version(
        "post-1", "alice", {"title": {"old": "Hello", "new": "Hi"}}, "shorter title"
    )
    await scheduler.advance(10)
    second = await service.create_version(
        "post-1", "ed", {"body": {"old": "", "new": "Lorem"}}
    )

    assert first.changes["title"].new == "Hi"
    assert first.description == "shorter title"
    versions = await service.list_versions("post-1")
    assert [v.id for v in versions] == [first.id, second.id]
    assert await service.list_versions("post-2") == []


@pytest.mark.asyncio
async def test_track_changes_records_only_differences(service):
    before = {"title": "Hello", "body": "Lorem", "tags": ["news"]}
    after = {"title": "Hi", "body": "Lorem", "tags": ["news", "tech"]}

    version = await service.track_changes("post-1", before, after, actor="alice")

    assert set(version.changes) == {"title", "tags"}
    assert version.changes["tags"].old == ["news"]
    assert version.changes["tags"].new == ["news", "tech"]
    assert await service.track_changes("post-1", before, dict(before)) is None

    only_title = await service.track_changes("post-1", before, after, fields=["title"])
    assert set(only_title.changes) == {"title"}


def _variants():
    return [
        {"id": "A", "changes": {"title": "Ten tips"}},
        {"id": "B", "changes": {"title": "Tips"}},
    ]


@pytest.mark.asyncio
async def test_ab_test_completes_once_after_duration(service, scheduler, analytics, store):
    test = await service.start_ab_test("post-1", _variants(), ["conversion"], 3600, actor="ed")
    assert test.status == ABTestStatus.RUNNING
    assert scheduler.pending == 1

    early = await service.complete_ab_test(test.id)
    assert early.status == ABTestStatus.RUNNING
    assert analytics.queries == []

    assert await scheduler.advance(3600) == 1
    done = await store.get_ab_test(test.id)
    assert done.status == ABTestStatus.COMPLETED
    assert done.results.winner.variant_id == "A"
    assert done.results.winner.score == 20
    assert done.results.winner.improvement == pytest.approx(25.0)
    assert done.results.scores == {"A": 20, "B": 16}
    assert done.results.variant_results["B"] == {"conversion": 8}
    assert [q["filters"] for q in analytics.queries] == [
        {"content_id": "post-1", "variant": "A"},
        {"content_id": "post-1", "variant": "B"},
    ]

    again = await service.complete_ab_test(test.id)
    assert again.results == done.results
    assert len(analytics.queries) == 2


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "variants, metrics, duration",
    [
        ([{"id": "A"}], ["conversion"], 60),
        ([{"id": "A"}, {"id": "A"}], ["conversion"], 60),
        ([{"id": "A"}, {"id": "B"}], [], 60),
        ([{"id": "A"}, {"id": "B"}], ["conversion"], -1),
    ],
)
async def test_ab_test_rejects_bad_setup(service, scheduler, variants, metrics, duration):
    with pytest.raises(ValidationError):
        await service.start_ab_test("post-1", variants, metrics, duration)
    assert scheduler.pending == 0


@pytest.mark.asyncio
async def test_complete_unknown_ab_test(service):
    with pytest.raises(NotFound):
        await service.complete_ab_test("missing")
