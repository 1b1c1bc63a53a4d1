import asyncio

import pytest

from storage.base import is_conflict, is_not_found
from storage.db_core import connect, resolve_db_path
from storage.docstore import ConflictError, LocalDocStore, NotFoundError, StoreError


def test_put_get_update_and_stale_rev(make_db):
    db = make_db()
    r1 = db.put_sync({"_id": "t_a", "v": 1})
    assert r1["rev"].startswith("1-")

    doc = db.get_sync("t_a")
    assert doc == {"_id": "t_a", "_rev": r1["rev"], "v": 1}

    r2 = db.put_sync({"_id": "t_a", "_rev": r1["rev"], "v": 2})
    assert r2["rev"].startswith("2-")

    with pytest.raises(ConflictError) as ei:
        db.put_sync({"_id": "t_a", "_rev": r1["rev"], "v": 3})
    assert is_conflict(ei.value)

    with pytest.raises(ConflictError):
        db.put_sync({"_id": "t_a", "v": 4})


def test_remove_and_recreate(make_db):
    db = make_db()
    r1 = db.put_sync({"_id": "t_a", "v": 1})
    db.remove_sync("t_a", r1["rev"])

    with pytest.raises(NotFoundError) as ei:
        db.get_sync("t_a")
    assert is_not_found(ei.value)
    assert db.all_docs_sync() == []

    r3 = db.put_sync({"_id": "t_a", "v": 2})
    assert r3["rev"].startswith("3-")
    assert db.get_sync("t_a")["v"] == 2


def test_old_revision_stays_readable(make_db):
    db = make_db()
    r1 = db.put_sync({"_id": "t_a", "v": 1})
    db.put_sync({"_id": "t_a", "_rev": r1["rev"], "v": 2})
    assert db.get_sync("t_a", rev=r1["rev"])["v"] == 1
    with pytest.raises(NotFoundError):
        db.get_sync("t_a", rev="9-missing")


def test_bulk_docs_reports_per_item(make_db):
    db = make_db()
    r1 = db.put_sync({"_id": "t_a", "v": 1})
    out = db.bulk_docs_sync(
        [
            {"_id": "t_a", "_rev": r1["rev"], "_deleted": True},
            {"_id": "t_b", "_rev": "1-stale", "_deleted": True},
            {"_id": "t_c", "v": 3},
        ]
    )
    assert out[0]["ok"] is True
    assert out[1]["error"] == "conflict" and out[1]["status"] == 409
    assert out[2]["ok"] is True
    assert [row["id"] for row in db.all_docs_sync()] == ["t_c"]


def test_divergent_edits_become_the_same_conflict_on_both_sides(make_db):
    a, b = make_db("a"), make_db("b")
    r1 = a.put_sync({"_id": "t_x", "v": 0})
    assert b.insert_revs(a.revs_since(0)) == 1

    a.put_sync({"_id": "t_x", "_rev": r1["rev"], "v": "from-a"})
    b.put_sync({"_id": "t_x", "_rev": r1["rev"], "v": "from-b"})

    a_seq, b_seq = a.update_seq(), b.update_seq()
    b.insert_revs(a.revs_since(0))
    a.insert_revs(b.revs_since(0))
    # Replaying the same revisions is a no-op.
    assert b.insert_revs(a.revs_since(0)) == 0
    assert a.update_seq() > a_seq and b.update_seq() > b_seq

    da = a.get_sync("t_x", conflicts=True)
    db_ = b.get_sync("t_x", conflicts=True)
    assert da["_rev"] == db_["_rev"]
    assert da["_conflicts"] == db_["_conflicts"]
    assert len(da["_conflicts"]) == 1
    assert {da["v"], a.get_sync("t_x", rev=da["_conflicts"][0])["v"]} == {"from-a", "from-b"}

    rows = a.all_docs_sync(include_docs=True, conflicts=True)
    assert rows[0]["doc"]["_conflicts"] == da["_conflicts"]


def test_removing_a_losing_revision_clears_the_conflict(make_db):
    a, b = make_db("a"), make_db("b")
    r1 = a.put_sync({"_id": "t_x", "v": 0})
    b.insert_revs(a.revs_since(0))
    a.put_sync({"_id": "t_x", "_rev": r1["rev"], "v": 1})
    b.put_sync({"_id": "t_x", "_rev": r1["rev"], "v": 2})
    a.insert_revs(b.revs_since(0))

    doc = a.get_sync("t_x", conflicts=True)
    a.remove_sync("t_x", doc["_conflicts"][0])
    after = a.get_sync("t_x", conflicts=True)
    assert after["_rev"] == doc["_rev"]
    assert "_conflicts" not in after


def test_changes_feed_delivers_in_commit_order_until_cancelled(make_db):
    db = make_db()

    async def main():
        seen = []
        feed = db.changes(on_change=seen.append)
        r1 = await db.put({"_id": "t_a", "v": 1})
        await db.put({"_id": "t_b", "v": 2})
        await db.remove("t_a", r1["rev"])
        await asyncio.sleep(0)
        feed.cancel()
        await db.put({"_id": "t_c", "v": 3})
        await asyncio.sleep(0.05)
        return seen

    seen = asyncio.run(main())
    assert [c["id"] for c in seen] == ["t_a", "t_b", "t_a"]
    assert seen[0]["doc"]["v"] == 1
    assert seen[2].get("deleted") is True
    assert seen[0]["seq"] < seen[1]["seq"] < seen[2]["seq"]


def test_open_shares_one_instance_per_file(tmp_path):
    path = tmp_path / "shared.sqlite3"
    a = LocalDocStore.open(str(path))
    b = LocalDocStore.open(f"sqlite:///{path}")
    assert a is b


def test_resolve_db_path(tmp_path):
    assert resolve_db_path(f"sqlite:///{tmp_path}/x.db") == (tmp_path / "x.db").resolve()
    with pytest.raises(ValueError):
        resolve_db_path("  ")


def test_change_for_unknown_document_raises_store_error(make_db):
    db = make_db()
    conn = connect(db.db_path)
    try:
        with pytest.raises(StoreError, match="no revisions stored"):
            db._change_for(conn, "t_missing")
    finally:
        conn.close()
