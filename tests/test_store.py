import sqlite3
from pathlib import Path

import pytest

from toolchat.schemas import DEFAULT_TITLE, Attachments, Message, ToolCall
from toolchat.store import ConversationStore


@pytest.mark.asyncio
async def test_init_creates_tables_and_one_current_conversation(tmp_path: Path):
    store = ConversationStore(str(tmp_path / "schema.db"))
    await store.init()
    rows = await store.fetchall("SELECT name FROM sqlite_master WHERE type='table'")
    tables = {row["name"] for row in rows}
    assert {"conversations", "messages", "conversation_state", "uploads", "events", "configs"}.issubset(tables)
    conversations = await store.list_conversations()
    assert len(conversations) == 1
    assert conversations[0].title == DEFAULT_TITLE
    assert conversations[0].title_source == "default"
    assert await store.get_current_conversation_id() == conversations[0].id


@pytest.mark.asyncio
async def test_init_is_idempotent(tmp_path: Path):
    store = ConversationStore(str(tmp_path / "again.db"))
    await store.init()
    await store.init()
    assert len(await store.list_conversations()) == 1


@pytest.mark.asyncio
async def test_migration_adds_title_source(tmp_path: Path):
    db_path = tmp_path / "legacy.db"
    conn = sqlite3.connect(db_path)
    conn.executescript(
        """
        CREATE TABLE conversations(
            id INTEGER PRIMARY KEY,
            title TEXT,
            created_at INTEGER,
            updated_at INTEGER
        );
        """
    )
    conn.execute(
        "INSERT INTO conversations(id, title, created_at, updated_at) VALUES (?,?,?,?)",
        (1700000000000, "Old chat", 1700000000000, 1700000000000),
    )
    conn.commit()
    conn.close()

    store = ConversationStore(str(db_path))
    await store.init()
    convo = await store.get_conversation(1700000000000)
    assert convo.title == "Old chat"
    assert convo.title_source == "default"
    assert await store.get_current_conversation_id() == 1700000000000


@pytest.mark.asyncio
async def test_conversation_ids_are_unique_and_listed_newest_first(store: ConversationStore):
    first = await store.create_conversation()
    second = await store.create_conversation("Trip plans")
    assert first.id != second.id
    assert second.title_source == "user"
    ids = [c.id for c in await store.list_conversations()]
    assert ids.index(second.id) < ids.index(first.id)


@pytest.mark.asyncio
async def test_messages_round_trip_in_order(store: ConversationStore):
    cid = await store.get_current_conversation_id()
    user = Message(role="user", content="draw a fox", attachments=Attachments(uploaded_image="/api/uploads/1"))
    answer = Message(
        role="assistant",
        content="done",
        turn_id="turn-1",
        tool_calls=[ToolCall(id="c1", tool_name="generateImage", arguments={"prompt": "fox"})],
        attachments=Attachments(image_urls=["https://pollinations.ai/prompt/fox"]),
    )
    await store.append_message(cid, user)
    await store.append_message(cid, answer)
    messages = await store.list_messages(cid)
    assert [m.id for m in messages] == [user.id, answer.id]
    assert messages[0].attachments.uploaded_image == "/api/uploads/1"
    assert messages[1].tool_calls[0].arguments == {"prompt": "fox"}
    assert messages[1].attachments.image_urls == ["https://pollinations.ai/prompt/fox"]


@pytest.mark.asyncio
async def test_status_messages_can_be_filtered_and_removed(store: ConversationStore):
    cid = await store.get_current_conversation_id()
    user = await store.append_message(cid, Message(role="user", content="hi"))
    status = await store.append_message(cid, Message(role="assistant", content="Processing...", kind="status"))
    visible = await store.list_messages(cid, include_status=False)
    assert [m.id for m in visible] == [user.id]

    removed = await store.remove_messages(cid, [status.id, "missing"])
    assert removed == [status.id]
    assert [m.id for m in await store.list_messages(cid)] == [user.id]


@pytest.mark.asyncio
async def test_remove_messages_is_scoped_to_conversation(store: ConversationStore):
    cid = await store.get_current_conversation_id()
    other = await store.create_conversation()
    msg = await store.append_message(cid, Message(role="user", content="hi"))
    assert await store.remove_messages(other.id, [msg.id]) == []
    assert len(await store.list_messages(cid)) == 1


@pytest.mark.asyncio
async def test_deleting_last_conversation_creates_a_fresh_one(store: ConversationStore):
    only = await store.get_current_conversation_id()
    await store.append_message(only, Message(role="user", content="hi"))
    replacement = await store.delete_conversation(only)
    assert replacement is not None
    assert replacement.id != only
    assert replacement.title == DEFAULT_TITLE
    assert await store.get_current_conversation_id() == replacement.id
    assert await store.list_messages(only) == []


@pytest.mark.asyncio
async def test_deleting_current_moves_pointer_to_newest(store: ConversationStore):
    older = await store.get_current_conversation_id()
    newer = await store.create_conversation()
    await store.set_current_conversation_id(older)
    assert await store.delete_conversation(older) is None
    assert await store.get_current_conversation_id() == newer.id


@pytest.mark.asyncio
async def test_set_title_records_source(store: ConversationStore):
    cid = await store.get_current_conversation_id()
    updated = await store.set_title(cid, "Tokyo Weather", "summary")
    assert updated.title == "Tokyo Weather"
    assert updated.title_source == "summary"
    assert await store.set_title(12345, "nope", "user") is None


@pytest.mark.asyncio
async def test_state_survives_reopen(tmp_path: Path):
    path = str(tmp_path / "durable.db")
    store = ConversationStore(path)
    await store.init()
    cid = await store.get_current_conversation_id()
    await store.append_message(cid, Message(role="user", content="remember me"))
    await store.set_title(cid, "Memory", "user")

    reopened = ConversationStore(path)
    await reopened.init()
    assert await reopened.get_current_conversation_id() == cid
    convo = await reopened.get_conversation(cid)
    assert convo.title == "Memory"
    assert [m.content for m in convo.messages] == ["remember me"]


@pytest.mark.asyncio
async def test_events_are_sequenced_per_turn(store: ConversationStore):
    first = await store.add_event("turn-a", "turn_state", {"state": "awaiting_initial_completion"})
    second = await store.add_event("turn-a", "turn_state", {"state": "done"})
    other = await store.add_event("turn-b", "turn_state", {"state": "done"})
    assert (first["seq"], second["seq"], other["seq"]) == (1, 2, 1)
    replay = await store.list_events("turn-a", after_seq=1)
    assert [e["payload"]["state"] for e in replay] == ["done"]
