import asyncio

import pytest

from sync import ConflictNotFoundError, EncryptedStore
from sync.errors import DecryptionError

RAW = {"passphrase_mode": "raw"}


def _make_conflict(make_db):
    """Store a edits twice, b (wrong key) and c (right key) once each, all from one base."""
    a, b, c = make_db("a"), make_db("b"), make_db("c")

    async def main():
        async with EncryptedStore(a, "right", options=RAW) as sa:
            base = await sa.put("notes", {"_id": "n1", "text": "base"})
        b.insert_revs(a.revs_since(0))
        c.insert_revs(a.revs_since(0))

        async with EncryptedStore(a, "right", options=RAW) as sa:
            v2 = await sa.put("notes", {**base, "text": "a-2"})
            await sa.put("notes", {**v2, "text": "a-3"})
        async with EncryptedStore(b, "wrong", options=RAW) as sb:
            await sb.put("notes", {**base, "text": "from-b"})
        async with EncryptedStore(c, "right", options=RAW) as sc:
            await sc.put("notes", {**base, "text": "from-c"})

    asyncio.run(main())
    a.insert_revs(b.revs_since(0))
    a.insert_revs(c.revs_since(0))
    return a


def test_get_reports_conflict_and_undecryptable_loser(make_db, recorder):
    a = _make_conflict(make_db)
    rec = recorder(conflicts=True)

    async def main():
        async with EncryptedStore(a, "right", rec, options=RAW) as store:
            return await store.get("notes", "n1")

    doc = asyncio.run(main())
    assert doc["text"] == "a-3"
    assert doc["_rev"].startswith("3-")

    assert len(rec.conflicts) == 1
    [info] = rec.conflicts[0]
    assert (info.doc_id, info.table, info.id) == ("notes_n1", "notes", "n1")
    assert info.current_rev == doc["_rev"]
    assert len(info.conflict_revs) == 2
    assert [d["text"] for d in info.losers] == ["from-c"]

    assert len(rec.errors) == 1
    [err] = rec.errors[0]
    assert err.doc_id.startswith("notes_n1@2-")
    assert isinstance(err.error, DecryptionError)


def test_load_all_sends_one_conflict_and_one_error_notification(make_db, recorder):
    a = _make_conflict(make_db)
    rec = recorder(conflicts=True)

    async def main():
        async with EncryptedStore(a, "right", rec, options=RAW) as store:
            await store.load_all()

    asyncio.run(main())
    assert len(rec.changes) == 1
    assert len(rec.conflicts) == 1 and len(rec.conflicts[0]) == 1
    assert len(rec.errors) == 1 and len(rec.errors[0]) == 1


def test_loser_errors_are_reported_without_a_conflict_listener(make_db, recorder):
    a = _make_conflict(make_db)
    rec = recorder()

    async def main():
        async with EncryptedStore(a, "right", rec, options=RAW) as store:
            await store.load_all()
            doc = await store.get("notes", "n1")
            assert doc["text"] == "a-3"

    asyncio.run(main())
    assert len(rec.changes) == 1
    assert rec.conflicts == []
    # One from the bulk load, one from get.
    assert len(rec.errors) == 2
    assert all(len(batch) == 1 and batch[0].doc_id.startswith("notes_n1@2-") for batch in rec.errors)


def test_get_conflict_info_returns_none_when_current_version_is_unreadable(make_db, recorder):
    a = _make_conflict(make_db)
    rec = recorder(conflicts=True)

    async def main():
        async with EncryptedStore(a, "wrong", rec, options=RAW) as store:
            return await store.get_conflict_info("notes", "n1")

    assert asyncio.run(main()) is None
    assert rec.conflicts == []
    assert len(rec.errors) == 1
    [err] = rec.errors[0]
    assert err.doc_id == "notes_n1"
    assert isinstance(err.error, DecryptionError)


def test_live_conflict_is_reported_after_its_change(make_db, recorder):
    a = _make_conflict(make_db)
    b = make_db("late")
    events = []
    rec = recorder(conflicts=True)
    rec.on_change = lambda batches: events.append(("change", batches))
    rec.on_conflict = lambda infos: events.append(("conflict", infos))

    async def main():
        async with EncryptedStore(b, "right", rec, options=RAW) as store:
            await store.load_all()
            # Replicating the already-conflicted history lands as live changes.
            await asyncio.to_thread(b.insert_revs, a.revs_since(0))
            await store.wait_idle()

    asyncio.run(main())
    kinds = [k for k, _ in events]
    assert kinds == ["change", "conflict"]
    [info] = events[1][1]
    assert info.id == "n1" and [d["text"] for d in info.losers] == ["from-c"]


def test_get_conflict_info_does_not_notify(make_db, recorder):
    a = _make_conflict(make_db)
    rec = recorder(conflicts=True)

    async def main():
        async with EncryptedStore(a, "right", rec, options=RAW) as store:
            info = await store.get_conflict_info("notes", "n1")
            missing = await store.get_conflict_info("notes", "nope")
            return info, missing

    info, missing = asyncio.run(main())
    assert missing is None
    assert [d["text"] for d in info.losers] == ["from-c"]
    assert rec.conflicts == []
    assert len(rec.errors) == 1


def test_resolve_conflict_picks_a_loser_and_clears_the_rest(make_db, recorder):
    a = _make_conflict(make_db)
    rec = recorder(conflicts=True)

    async def main():
        async with EncryptedStore(a, "right", rec, options=RAW) as store:
            info = await store.get_conflict_info("notes", "n1")
            saved = await store.resolve_conflict("notes", "n1", info.losers[0])
            after = await store.get_conflict_info("notes", "n1")
            current = await store.get("notes", "n1")
            with pytest.raises(ConflictNotFoundError):
                await store.resolve_conflict("notes", "n1", current)
            return saved, after, current

    saved, after, current = asyncio.run(main())
    assert saved["_rev"].startswith("4-")
    assert after is None
    assert current["text"] == "from-c"
    assert current["_rev"] == saved["_rev"]
    assert "_conflicts" not in a.get_sync("notes_n1", conflicts=True)
