import unittest
from datetime import datetime, timedelta, timezone

from calsync.description import DEFAULT_DELIMITER, Description, DescriptionCodec
from calsync.models import Event
from calsync.reconciler import DuplicateSourceIDError, compute_changes, events_equal

NOW = datetime(2017, 4, 29, 20, 0, tzinfo=timezone(timedelta(hours=-7)))
CODEC = DescriptionCodec()


def new_src_event(name: str, start: datetime) -> Event:
    return Event(
        title=f"{name} title",
        start=start,
        end=start + timedelta(hours=1),
        location=f"{name} where",
        description=f"{name} description",
        source_id=f"{name} srcId",
    )


def calendar_copy(src: Event, annotation: str = "", extra: str = "") -> Event:
    managed = src.description
    if extra:
        managed = f"{managed}\n{extra}"
    return Event(
        title=src.title,
        start=src.start,
        end=src.end,
        location=src.location,
        description=CODEC.serialize(Description(annotation, managed)),
        source_id=src.source_id,
        remote_id=src.title,
    )


def find_event(events: list[Event], title: str) -> Event:
    for event in events:
        if event.title == title:
            return event
    raise AssertionError(f"Unable to find {title}")


class ComputeChangesTests(unittest.TestCase):
    def test_mixed_operations(self) -> None:
        same = new_src_event("same", NOW + timedelta(hours=1))
        changed = new_src_event("changed", NOW + timedelta(days=1))
        has_comment = new_src_event("hasComment", NOW + timedelta(days=2))
        has_comment_with_change = new_src_event("hasCommentWithChange", NOW + timedelta(days=2))
        new_event = new_src_event("newEvent", NOW + timedelta(days=3))
        removed_event = new_src_event("removedEvent", NOW + timedelta(days=4))

        src_events = [same, changed, has_comment, has_comment_with_change, new_event]
        cal_events = [
            calendar_copy(same),
            calendar_copy(changed, extra="This is a change"),
            calendar_copy(has_comment, annotation="This is a comment"),
            calendar_copy(has_comment_with_change, annotation="This is a comment", extra="ThisIsAChange"),
            calendar_copy(removed_event),
        ]

        changes = compute_changes(NOW, cal_events, src_events)

        self.assertEqual(len(changes.deletes), 1)
        self.assertEqual(changes.deletes[0].remote_id, "removedEvent title")

        self.assertEqual(len(changes.updates), 2)
        find_event(changes.updates, "changed title")
        updated = find_event(changes.updates, "hasCommentWithChange title")
        self.assertTrue(updated.description.startswith(f"This is a comment\n{DEFAULT_DELIMITER}"))
        self.assertEqual(updated.remote_id, "hasCommentWithChange title")

        self.assertEqual(len(changes.adds), 1)
        self.assertEqual(changes.adds[0].title, "newEvent title")

    def test_annotation_preserved_on_update(self) -> None:
        start = NOW + timedelta(days=1)
        remote = Event(
            title="old",
            start=start,
            end=start + timedelta(hours=1),
            description="note\n====\nold body",
            source_id="x",
            remote_id="remote-x",
        )
        desired = Event(
            title="old",
            start=start,
            end=start + timedelta(hours=1),
            description="new body",
            source_id="x",
        )

        changes = compute_changes(NOW, [remote], [desired], codec=DescriptionCodec("===="))

        self.assertEqual(changes.deletes, [])
        self.assertEqual(changes.adds, [])
        self.assertEqual(len(changes.updates), 1)
        update = changes.updates[0]
        self.assertEqual(update.description, "note\n====\nnew body")
        self.assertEqual(update.source_id, "x")
        self.assertEqual(update.title, "old")
        self.assertEqual(update.remote_id, "remote-x")

    def test_update_is_independent_of_inputs(self) -> None:
        desired = new_src_event("a", NOW + timedelta(days=1))
        remote = calendar_copy(desired, annotation="keep me", extra="stale")
        remote_description = remote.description

        changes = compute_changes(NOW, [remote], [desired])
        update = changes.updates[0]
        update.title = "mutated"

        self.assertIsNot(update, desired)
        self.assertIsNot(update, remote)
        self.assertEqual(desired.title, "a title")
        self.assertEqual(desired.description, "a description")
        self.assertEqual(desired.remote_id, "")
        self.assertEqual(remote.description, remote_description)

    def test_identical_sets_produce_no_changes(self) -> None:
        events = [new_src_event(f"e{i}", NOW + timedelta(days=i + 1)) for i in range(3)]
        remote = [calendar_copy(event) for event in events]
        changes = compute_changes(NOW, remote, events)
        self.assertTrue(changes.is_empty())

    def test_expired_desired_event_is_not_added(self) -> None:
        past = new_src_event("past", NOW - timedelta(hours=3))
        changes = compute_changes(NOW, [], [past])
        self.assertTrue(changes.is_empty())

    def test_event_ending_exactly_now_counts_as_expired(self) -> None:
        event = new_src_event("edge", NOW - timedelta(hours=1))
        self.assertEqual(event.end, NOW)
        self.assertEqual(compute_changes(NOW, [], [event]).adds, [])

    def test_expired_desired_event_does_not_block_delete(self) -> None:
        past = new_src_event("past", NOW - timedelta(hours=3))
        remote = calendar_copy(past)
        remote.end = NOW + timedelta(hours=1)
        changes = compute_changes(NOW, [remote], [past])
        self.assertEqual(changes.deletes, [remote])
        self.assertEqual(changes.adds, [])
        self.assertEqual(changes.updates, [])

    def test_partition_totality(self) -> None:
        desired = [new_src_event(f"d{i}", NOW + timedelta(days=i + 1)) for i in range(6)]
        remote = [
            calendar_copy(desired[0]),
            calendar_copy(desired[1], extra="changed"),
            calendar_copy(desired[2], annotation="note"),
            calendar_copy(new_src_event("gone", NOW + timedelta(days=9))),
        ]
        changes = compute_changes(NOW, remote, desired)

        unchanged_remote = len(remote) - len(changes.updates) - len(changes.deletes)
        self.assertEqual(unchanged_remote, 2)
        touched = {event.source_id for event in changes.updates + changes.adds}
        self.assertEqual(len(touched), len(changes.updates) + len(changes.adds))
        self.assertEqual(len(changes.adds), 3)
        self.assertEqual(len(desired), unchanged_remote + len(changes.updates) + len(changes.adds))

    def test_duplicate_source_ids_rejected(self) -> None:
        first = new_src_event("dup", NOW + timedelta(days=1))
        second = new_src_event("dup", NOW + timedelta(days=2))
        with self.assertRaises(DuplicateSourceIDError) as ctx:
            compute_changes(NOW, [], [first, second])
        self.assertEqual(ctx.exception.source_ids, ["dup srcId"])

    def test_duplicate_source_ids_last_wins_when_allowed(self) -> None:
        first = new_src_event("dup", NOW + timedelta(days=1))
        second = new_src_event("dup", NOW + timedelta(days=2))
        with self.assertLogs("calsync.reconciler", level="WARNING"):
            changes = compute_changes(NOW, [], [first, second], allow_duplicates=True)
        self.assertEqual(changes.adds, [second])

    def test_expired_duplicate_is_not_ambiguous(self) -> None:
        old = new_src_event("dup", NOW - timedelta(days=1))
        current = new_src_event("dup", NOW + timedelta(days=1))
        changes = compute_changes(NOW, [], [old, current])
        self.assertEqual(changes.adds, [current])

    def test_naive_now_treated_as_utc(self) -> None:
        event = new_src_event("utc", datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc))
        changes = compute_changes(datetime(2026, 1, 1, 12, 30), [], [event])
        self.assertEqual(changes.adds, [event])


class EventsEqualTests(unittest.TestCase):
    def test_annotation_only_difference_is_equal(self) -> None:
        src = new_src_event("x", NOW)
        self.assertTrue(events_equal(calendar_copy(src, annotation="personal note"), src))

    def test_remote_id_ignored(self) -> None:
        src = new_src_event("x", NOW)
        other = calendar_copy(src)
        other.remote_id = "something-else"
        self.assertTrue(events_equal(other, src))

    def test_same_instant_in_other_timezone_is_equal(self) -> None:
        src = new_src_event("x", NOW)
        other = calendar_copy(src)
        other.start = src.start.astimezone(timezone.utc)
        other.end = src.end.astimezone(timezone.utc)
        self.assertTrue(events_equal(other, src))

    def test_naive_desired_matches_aware_remote_copy(self) -> None:
        desired = new_src_event("naive", datetime(2026, 1, 2, 9, 0))
        remote = Event(
            title=desired.title,
            start=datetime(2026, 1, 2, 9, 0, tzinfo=timezone.utc),
            end=datetime(2026, 1, 2, 10, 0, tzinfo=timezone.utc),
            location=desired.location,
            description=f"{DEFAULT_DELIMITER}\n{desired.description}",
            source_id=desired.source_id,
            remote_id="r-naive",
        )
        self.assertTrue(events_equal(remote, desired))
        changes = compute_changes(datetime(2026, 1, 1, tzinfo=timezone.utc), [remote], [desired])
        self.assertTrue(changes.is_empty())

    def test_field_differences(self) -> None:
        src = new_src_event("x", NOW)
        for field_name, value in (
            ("title", "other"),
            ("location", "elsewhere"),
            ("source_id", "other-id"),
            ("start", NOW - timedelta(minutes=5)),
            ("end", NOW + timedelta(hours=2)),
        ):
            with self.subTest(field=field_name):
                other = calendar_copy(src)
                setattr(other, field_name, value)
                self.assertFalse(events_equal(other, src))


if __name__ == "__main__":
    unittest.main()
