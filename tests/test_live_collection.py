import asyncio
import random

import pytest

from conftest import build_quiz, drain, quiz_payload
from quiz_nexus.constants.quiz_constants import QUIZZES_TABLE
from quiz_nexus.core.models import ChangeEvent, ChangeKind, Quiz, ViewerRole
from quiz_nexus.core.services.live_collection import (
    LiveCollectionReconciler,
    apply_change,
    merge_delete,
    merge_insert,
    merge_update,
)
from quiz_nexus.core.services.quiz_backend import InMemoryQuizBackend
from quiz_nexus.core.visibility import quiz_visibility

published_only = quiz_visibility(ViewerRole.USER)
everything = quiz_visibility(ViewerRole.ADMIN)


def _ids(items):
    return [item.id for item in items]


def test_insert_prepends_and_is_idempotent():
    first = build_quiz("a")
    second = build_quiz("b")

    items = merge_insert([first], second, published_only)
    assert _ids(items) == ["b", "a"]
    assert _ids(merge_insert(items, second, published_only)) == ["b", "a"]


def test_insert_of_hidden_row_is_ignored():
    draft = build_quiz("draft", is_published=False)

    assert merge_insert([], draft, published_only) == []
    assert _ids(merge_insert([], draft, everything)) == ["draft"]


def test_update_replaces_in_place():
    items = [build_quiz("a"), build_quiz("b"), build_quiz("c")]
    renamed = build_quiz("b").with_updates(title="Renamed")

    merged = merge_update(items, renamed, published_only)

    assert _ids(merged) == ["a", "b", "c"]
    assert merged[1].title == "Renamed"


def test_update_removes_row_that_became_hidden():
    items = [build_quiz("a"), build_quiz("b")]
    unpublished = build_quiz("a", is_published=False)

    assert _ids(merge_update(items, unpublished, published_only)) == ["b"]
    assert _ids(merge_update(items, unpublished, everything)) == ["a", "b"]


def test_update_surfaces_newly_visible_row_at_front():
    items = [build_quiz("a")]

    assert _ids(merge_update(items, build_quiz("b"), published_only)) == ["b", "a"]
    assert _ids(merge_update(items, build_quiz("c", is_published=False), published_only)) == ["a"]


def test_delete_removes_by_id_and_tolerates_missing():
    items = [build_quiz("a"), build_quiz("b")]

    assert _ids(merge_delete(items, "a")) == ["b"]
    assert _ids(merge_delete(items, "zzz")) == ["a", "b"]


def test_apply_change_dispatches_on_kind():
    items = [build_quiz("a")]
    row = build_quiz("b").to_row()

    inserted = apply_change(items, ChangeEvent(QUIZZES_TABLE, ChangeKind.INSERT, new=row), published_only, Quiz.from_row)
    assert _ids(inserted) == ["b", "a"]

    deleted = apply_change(inserted, ChangeEvent(QUIZZES_TABLE, ChangeKind.DELETE, old={"id": "a"}), published_only, Quiz.from_row)
    assert _ids(deleted) == ["b"]

    deleted_from_new = apply_change(inserted, ChangeEvent(QUIZZES_TABLE, ChangeKind.DELETE, new={"id": "b"}), published_only, Quiz.from_row)
    assert _ids(deleted_from_new) == ["a"]


def test_apply_change_ignores_unknown_kinds_and_empty_rows():
    items = [build_quiz("a")]
    row = build_quiz("b").to_row()

    assert _ids(apply_change(items, ChangeEvent(QUIZZES_TABLE, "TRUNCATE", new=row), published_only, Quiz.from_row)) == ["a"]
    assert _ids(apply_change(items, ChangeEvent(QUIZZES_TABLE, ChangeKind.INSERT), published_only, Quiz.from_row)) == ["a"]
    assert _ids(apply_change(items, ChangeEvent(QUIZZES_TABLE, ChangeKind.DELETE), published_only, Quiz.from_row)) == ["a"]


def test_apply_change_leaves_input_untouched():
    items = [build_quiz("a")]
    row = build_quiz("b").to_row()

    apply_change(items, ChangeEvent(QUIZZES_TABLE, ChangeKind.INSERT, new=row), published_only, Quiz.from_row)

    assert _ids(items) == ["a"]


def _reconciler(backend, role, fetch=None):
    is_visible = quiz_visibility(role)

    async def fetch_quizzes():
        return await backend.list_quizzes(published_only=not role.is_elevated)

    return LiveCollectionReconciler(
        table=QUIZZES_TABLE,
        feed=backend,
        fetch=fetch or fetch_quizzes,
        parse_row=Quiz.from_row,
        is_visible=is_visible,
        refetch_on_subscribe=role.is_elevated,
    )


def test_publish_then_unpublish_is_seen_differently_by_role():
    async def scenario():
        backend = InMemoryQuizBackend()
        user_view = _reconciler(backend, ViewerRole.USER)
        admin_view = _reconciler(backend, ViewerRole.ADMIN)
        await user_view.open()
        await admin_view.open()
        await drain()

        quiz = await backend.create_quiz(quiz_payload("Ports", published=False), "admin-1")
        await drain()
        assert _ids(user_view.items) == []
        assert _ids(admin_view.items) == [quiz.id]

        await backend.update_quiz(quiz.id, {"is_published": True})
        await drain()
        assert _ids(user_view.items) == [quiz.id]

        await backend.update_quiz(quiz.id, {"is_published": False})
        await drain()
        assert _ids(user_view.items) == []
        assert admin_view.get(quiz.id).is_published is False

        user_view.close()
        admin_view.close()

    asyncio.run(scenario())


def test_local_write_and_feed_echo_do_not_duplicate():
    async def scenario():
        backend = InMemoryQuizBackend()
        view = _reconciler(backend, ViewerRole.ADMIN)
        await view.open()
        await drain()

        quiz = await backend.create_quiz(quiz_payload("Cargo"), "admin-1")
        view.upsert_local(quiz)
        assert _ids(view.items) == [quiz.id]

        await drain()
        assert _ids(view.items) == [quiz.id]
        view.close()

    asyncio.run(scenario())


def test_events_for_a_deleted_quiz_remove_it():
    async def scenario():
        backend = InMemoryQuizBackend()
        first = await backend.create_quiz(quiz_payload("First"), "admin-1")
        second = await backend.create_quiz(quiz_payload("Second"), "admin-1")
        view = _reconciler(backend, ViewerRole.USER)
        await view.open()
        assert _ids(view.items) == [second.id, first.id]

        await backend.delete_quiz(first.id)
        await drain()
        assert _ids(view.items) == [second.id]
        view.close()

    asyncio.run(scenario())


def test_closed_reconciler_ignores_further_events():
    async def scenario():
        backend = InMemoryQuizBackend()
        view = _reconciler(backend, ViewerRole.USER)
        await view.open()
        assert view.is_open
        assert backend.subscriber_count(QUIZZES_TABLE) == 1

        view.close()
        assert not view.is_open
        assert backend.subscriber_count(QUIZZES_TABLE) == 0

        await backend.create_quiz(quiz_payload("Late"), "admin-1")
        await drain()
        view.apply(ChangeEvent(QUIZZES_TABLE, ChangeKind.INSERT, new=build_quiz("x").to_row()))
        assert view.items == []

    asyncio.run(scenario())


def test_admin_view_refetches_when_the_channel_reconnects():
    calls = []

    async def scenario():
        backend = InMemoryQuizBackend()

        async def counting_fetch():
            calls.append("fetch")
            return await backend.list_quizzes(published_only=False)

        admin_view = _reconciler(backend, ViewerRole.ADMIN, fetch=counting_fetch)
        await admin_view.open()
        await drain()
        after_open = len(calls)

        backend.reconnect()
        await drain()
        assert len(calls) == after_open + 1
        admin_view.close()

    asyncio.run(scenario())

    assert calls


def test_user_view_does_not_refetch_on_reconnect():
    calls = []

    async def scenario():
        backend = InMemoryQuizBackend()

        async def counting_fetch():
            calls.append("fetch")
            return await backend.list_quizzes(published_only=True)

        user_view = _reconciler(backend, ViewerRole.USER, fetch=counting_fetch)
        await user_view.open()
        backend.reconnect()
        await drain()
        user_view.close()

    asyncio.run(scenario())

    assert calls == ["fetch"]


def test_refresh_filters_hidden_rows_and_duplicates():
    async def scenario():
        backend = InMemoryQuizBackend()

        async def noisy_fetch():
            return [build_quiz("a"), build_quiz("draft", is_published=False), build_quiz("a"), build_quiz("b")]

        view = _reconciler(backend, ViewerRole.USER, fetch=noisy_fetch)
        await view.refresh()
        return view

    view = asyncio.run(scenario())

    assert _ids(view.items) == ["a", "b"]


def _random_feed(seed, steps=40):
    """Yield random change events, each paired with the publish flag of every live quiz."""
    rng = random.Random(seed)
    published: dict[str, bool] = {}
    for _ in range(steps):
        quiz_id = rng.choice("abcd")
        if quiz_id not in published:
            published[quiz_id] = rng.random() < 0.5
            row = build_quiz(quiz_id, is_published=published[quiz_id]).to_row()
            event = ChangeEvent(QUIZZES_TABLE, ChangeKind.INSERT, new=row)
        elif rng.random() < 0.6:
            published[quiz_id] = not published[quiz_id]
            row = build_quiz(quiz_id, is_published=published[quiz_id]).to_row()
            event = ChangeEvent(QUIZZES_TABLE, ChangeKind.UPDATE, new=row)
        else:
            del published[quiz_id]
            event = ChangeEvent(QUIZZES_TABLE, ChangeKind.DELETE, old={"id": quiz_id})
        yield event, dict(published)


@pytest.mark.parametrize("replays", [1, 2])
@pytest.mark.parametrize("role", [ViewerRole.USER, ViewerRole.ADMIN])
@pytest.mark.parametrize("seed", range(25))
def test_random_interleavings_track_the_visible_set(seed, role, replays):
    is_visible = quiz_visibility(role)
    items: list[Quiz] = []

    for event, published in _random_feed(seed):
        for _ in range(replays):
            items = apply_change(items, event, is_visible, Quiz.from_row)

        ids = _ids(items)
        expected = {quiz_id for quiz_id, is_published in published.items() if is_published or role.is_elevated}
        assert len(ids) == len(set(ids))
        assert set(ids) == expected
        assert all(item.is_published == published[item.id] for item in items)


@pytest.mark.parametrize("role", [ViewerRole.USER, ViewerRole.ADMIN])
@pytest.mark.parametrize("seed", range(10))
def test_backend_mutations_with_batched_delivery_converge(seed, role):
    rng = random.Random(seed)

    async def scenario():
        backend = InMemoryQuizBackend()
        reconciler = _reconciler(backend, role)
        await reconciler.open()
        live: list[str] = []

        for step in range(30):
            if not live or rng.random() < 0.4:
                quiz = await backend.create_quiz(
                    quiz_payload(f"Quiz {step}", published=rng.random() < 0.5), "admin-1"
                )
                live.append(quiz.id)
            elif rng.random() < 0.6:
                quiz_id = rng.choice(live)
                current = await backend.get_quiz(quiz_id)
                await backend.update_quiz(quiz_id, {"is_published": not current.is_published})
            else:
                quiz_id = live.pop(rng.randrange(len(live)))
                await backend.delete_quiz(quiz_id)
            if rng.random() < 0.3:
                await drain()

        await drain()
        expected = await backend.list_quizzes(published_only=not role.is_elevated)
        ids = _ids(reconciler.items)
        reconciler.close()
        return ids, _ids(expected)

    ids, expected = asyncio.run(scenario())

    assert len(ids) == len(set(ids))
    assert set(ids) == set(expected)
