import pytest

from beliyo.repositories.conversation_repository import (
    ConversationRepository,
    is_participant,
    other_participant,
    pair_key,
)
from beliyo.utils.timeutils import utcnow


@pytest.mark.asyncio
async def test_get_or_create_is_idempotent_for_unordered_pair(db):
    repo = ConversationRepository(db)
    await repo.ensure_indexes()

    first = await repo.get_or_create_one_to_one("general", None, "alice", "bob")
    again = await repo.get_or_create_one_to_one("general", None, "bob", "alice")

    assert first["_id"] == again["_id"]
    assert again["participant1_id"] == "alice"
    assert again["participant2_id"] == "bob"
    assert await db["conversations"].count_documents({}) == 1


@pytest.mark.asyncio
async def test_context_separates_conversations(db):
    repo = ConversationRepository(db)
    await repo.ensure_indexes()

    book = await repo.get_or_create_one_to_one("shop", "p1", "alice", "bob")
    lamp = await repo.get_or_create_one_to_one("shop", "p2", "alice", "bob")
    direct = await repo.get_or_create_one_to_one("general", None, "alice", "bob")

    assert len({book["_id"], lamp["_id"], direct["_id"]}) == 3


@pytest.mark.asyncio
async def test_shared_participant_does_not_collide(db):
    repo = ConversationRepository(db)
    await repo.ensure_indexes()

    with_bob = await repo.get_or_create_one_to_one("general", None, "alice", "bob")
    with_carol = await repo.get_or_create_one_to_one("general", None, "alice", "carol")

    assert with_bob["_id"] != with_carol["_id"]
    listed = await repo.list_for_user("alice")
    assert {c["_id"] for c in listed} == {with_bob["_id"], with_carol["_id"]}


@pytest.mark.asyncio
async def test_snapshot_update(db):
    repo = ConversationRepository(db)
    conv = await repo.get_or_create_one_to_one("general", None, "alice", "bob")

    await repo.update_on_new_message(conv["_id"], "see you", utcnow())

    stored = await repo.get_by_id(conv["_id"])
    assert stored["last_message"] == "see you"
    assert stored["last_message_at"] is not None


def test_participant_helpers():
    conv = {"participant1_id": "alice", "participant2_id": "bob"}

    assert other_participant(conv, "alice") == "bob"
    assert other_participant(conv, "bob") == "alice"
    assert is_participant(conv, "bob")
    assert not is_participant(conv, "mallory")
    assert pair_key("bob", "alice") == pair_key("alice", "bob") == "alice:bob"
