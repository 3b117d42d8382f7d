import pytest

from toolchat.errors import FatalUpstreamError
from toolchat.llm import ToolCallsRequested
from tests.fakes import tool_call


async def _current(client) -> int:
    return (await client.get("/api/state")).json()["current_conversation_id"]


@pytest.mark.asyncio
async def test_send_message_runs_turn_to_done(client):
    cid = await _current(client)
    res = await client.post(f"/api/conversations/{cid}/messages", json={"content": "Weather in Tokyo?"})
    assert res.status_code == 200
    turn_id = res.json()["turn_id"]
    assert res.json()["conversation_id"] == cid

    await client.app.state.turns.wait(turn_id)
    turn = (await client.get(f"/api/turns/{turn_id}")).json()["turn"]
    assert turn["state"] == "done"
    assert turn["final_message"]["content"] == "Default answer."

    messages = (await client.get(f"/api/conversations/{cid}/messages")).json()["messages"]
    assert [(m["role"], m["content"]) for m in messages] == [
        ("user", "Weather in Tokyo?"),
        ("assistant", "Default answer."),
    ]
    convo = (await client.get(f"/api/conversations/{cid}")).json()["conversation"]
    assert convo["title"] == "Chat Title"
    assert convo["title_source"] == "summary"


@pytest.mark.asyncio
async def test_send_message_with_search_tool(client):
    client.fake_completion.script = [
        ToolCallsRequested(tool_calls=[tool_call("performWebSearch", query="weather in Tokyo")]),
    ]
    cid = await _current(client)
    turn_id = (await client.post(f"/api/conversations/{cid}/messages", json={"content": "Weather?"})).json()[
        "turn_id"
    ]
    await client.app.state.turns.wait(turn_id)
    turn = (await client.get(f"/api/turns/{turn_id}")).json()["turn"]
    assert turn["state"] == "done"
    assert turn["tool_calls"][0]["tool_name"] == "performWebSearch"
    # No search key in the test settings; the tool errors and the turn still completes.
    tool_message = client.fake_completion.calls[1]["messages"][-1]
    assert tool_message["role"] == "tool"
    assert "Failed to perform web search" in tool_message["content"]
    messages = (await client.get(f"/api/conversations/{cid}/messages")).json()["messages"]
    assert all(m["kind"] != "status" for m in messages)


@pytest.mark.asyncio
async def test_empty_message_is_rejected(client):
    cid = await _current(client)
    res = await client.post(f"/api/conversations/{cid}/messages", json={"content": "   "})
    assert res.status_code == 400


@pytest.mark.asyncio
async def test_unknown_upload_is_rejected(client):
    cid = await _current(client)
    res = await client.post(f"/api/conversations/{cid}/messages", json={"content": "see this", "upload_id": 42})
    assert res.status_code == 404


@pytest.mark.asyncio
async def test_send_with_uploaded_image(client):
    upload = await client.post("/api/uploads", files={"file": ("fox.png", b"\x89PNG", "image/png")})
    upload_id = upload.json()["id"]
    cid = await _current(client)
    res = await client.post(
        f"/api/conversations/{cid}/messages", json={"content": "What is this?", "upload_id": upload_id}
    )
    await client.app.state.turns.wait(res.json()["turn_id"])

    outbound_user = client.fake_completion.calls[0]["messages"][-1]
    assert outbound_user["content"][0] == {"type": "text", "text": "What is this?"}
    assert outbound_user["content"][1]["image_url"]["url"].startswith("data:image/png;base64,")
    messages = (await client.get(f"/api/conversations/{cid}/messages")).json()["messages"]
    assert messages[0]["attachments"]["uploaded_image"] == f"/api/uploads/{upload_id}"


@pytest.mark.asyncio
async def test_stop_when_idle(client):
    cid = await _current(client)
    res = await client.post(f"/api/conversations/{cid}/stop")
    assert res.json() == {"ok": True, "status": "idle"}


@pytest.mark.asyncio
async def test_unknown_turn_is_404(client):
    assert (await client.get("/api/turns/nope")).status_code == 404


@pytest.mark.asyncio
async def test_failed_turn_reports_error(client):
    client.fake_completion.script = [FatalUpstreamError("rejected", status_code=401, detail="bad key")]
    cid = await _current(client)
    turn_id = (await client.post(f"/api/conversations/{cid}/messages", json={"content": "hi"})).json()["turn_id"]
    await client.app.state.turns.wait(turn_id)
    turn = (await client.get(f"/api/turns/{turn_id}")).json()["turn"]
    assert turn["state"] == "failed"
    assert "HTTP 401" in turn["error"]
    messages = (await client.get(f"/api/conversations/{cid}/messages")).json()["messages"]
    assert messages[-1]["role"] == "system"
    assert messages[-1]["content"].startswith("Error: ")
