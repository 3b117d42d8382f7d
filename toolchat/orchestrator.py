import asyncio
import json
import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from .config import AppSettings
from .errors import CancellationError, InvalidResponseError, ToolExecutionError, UpstreamError
from .executors import ToolExecutors
from .formatting import MAX_TITLE_CHARS, derive_title, rewrite_image_urls
from .llm import Answer, CompletionClient, CompletionResult, ToolCallsRequested
from .prompts import build_system_prompt
from .schemas import Attachments, Message, ToolCall
from .store import ConversationStore
from .tools import GENERATE_IMAGE, PERFORM_REASONING, describe_tool_call, list_tools, to_openai_tools
from .uploads import ResolvedAttachment


logger = logging.getLogger("uvicorn.error")

T = TypeVar("T")

CONVERSATION_CHANNEL = "conversation"
UNEXPECTED_ERROR_TEXT = "An unexpected error occurred while answering."
# Finished turns kept in memory for GET /api/turns/{id}.
MAX_KEPT_RESULTS = 200


class TurnState(str, Enum):
    IDLE = "idle"
    AWAITING_INITIAL_COMPLETION = "awaiting_initial_completion"
    TOOL_EXECUTING = "tool_executing"
    AWAITING_FINAL_COMPLETION = "awaiting_final_completion"
    DONE = "done"
    ABORTED = "aborted"
    FAILED = "failed"


TERMINAL_STATES = {TurnState.DONE, TurnState.ABORTED, TurnState.FAILED}


@dataclass
class TurnResult:
    turn_id: str
    conversation_id: int
    state: TurnState = TurnState.IDLE
    final_message: Optional[Message] = None
    error: Optional[str] = None
    tool_calls: List[ToolCall] = field(default_factory=list)
    tool_results: List[Message] = field(default_factory=list)
    # Status messages appended during the turn and not yet retracted.
    status_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "turn_id": self.turn_id,
            "conversation_id": self.conversation_id,
            "state": self.state.value,
            "final_message": self.final_message.model_dump() if self.final_message else None,
            "error": self.error,
            "tool_calls": [call.model_dump() for call in self.tool_calls],
        }


class EventBus:
    """In-memory fan-out for SSE plus persisted events."""

    def __init__(self, store: ConversationStore):
        self.store = store
        self.subscribers: Dict[str, List[asyncio.Queue]] = {}
        self.global_subscribers: List[asyncio.Queue] = []
        self.lock = asyncio.Lock()
        self.turn_conversations: Dict[str, int] = {}

    def register_turn(self, turn_id: str, conversation_id: Optional[int]) -> None:
        if turn_id and conversation_id is not None:
            self.turn_conversations[turn_id] = conversation_id

    def release_turn(self, turn_id: str) -> None:
        self.turn_conversations.pop(turn_id, None)

    async def emit(self, turn_id: str, event_type: str, payload: dict) -> dict:
        safe_payload = dict(payload or {})
        if turn_id != CONVERSATION_CHANNEL:
            safe_payload.setdefault("turn_id", turn_id)
        if "conversation_id" not in safe_payload and turn_id in self.turn_conversations:
            safe_payload["conversation_id"] = self.turn_conversations[turn_id]
        stored = await self.store.add_event(turn_id, event_type, safe_payload)
        async with self.lock:
            queues = list(self.subscribers.get(turn_id, []))
            global_queues = list(self.global_subscribers)
        for q in queues:
            await q.put(stored)
        for q in global_queues:
            await q.put(stored)
        return stored

    async def subscribe(self, turn_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        async with self.lock:
            self.subscribers.setdefault(turn_id, []).append(queue)
        return queue

    async def subscribe_global(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        async with self.lock:
            self.global_subscribers.append(queue)
        return queue

    async def unsubscribe(self, turn_id: str, queue: asyncio.Queue) -> None:
        async with self.lock:
            queues = self.subscribers.get(turn_id, [])
            if queue in queues:
                queues.remove(queue)
            if not queues:
                self.subscribers.pop(turn_id, None)

    async def unsubscribe_global(self, queue: asyncio.Queue) -> None:
        async with self.lock:
            if queue in self.global_subscribers:
                self.global_subscribers.remove(queue)


def _check_cancel(cancel_event: asyncio.Event) -> None:
    if cancel_event.is_set():
        raise CancellationError()


async def _race(awaitable: Awaitable[T], cancel_event: asyncio.Event) -> T:
    """Await `awaitable` unless the cancel event fires first."""
    if cancel_event.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise CancellationError()
    work = asyncio.ensure_future(awaitable)
    stop_waiter = asyncio.create_task(cancel_event.wait())
    try:
        done, _ = await asyncio.wait({work, stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        stop_waiter.cancel()
        raise
    if work in done:
        stop_waiter.cancel()
        await asyncio.gather(stop_waiter, return_exceptions=True)
        result = work.result()
        # A result that lands after cancellation is discarded.
        _check_cancel(cancel_event)
        return result
    work.cancel()
    await asyncio.gather(work, return_exceptions=True)
    raise CancellationError()


def _error_summary(exc: Exception) -> str:
    text = getattr(exc, "user_message", None) or UNEXPECTED_ERROR_TEXT
    status_code = getattr(exc, "status_code", None)
    if status_code:
        text = f"{text} (HTTP {status_code})"
    return text


class Orchestrator:
    """Runs one user turn: initial completion, sequential tool calls, final completion."""

    def __init__(
        self,
        store: ConversationStore,
        completion_client: CompletionClient,
        executors: ToolExecutors,
        settings_provider: Callable[[], AppSettings],
        bus: Optional[EventBus] = None,
        clock: Optional[Callable[[], date]] = None,
        system_prompt: Optional[str] = None,
    ):
        self.store = store
        self.client = completion_client
        self.executors = executors
        self.settings_provider = settings_provider
        self.bus = bus or EventBus(store)
        self.clock = clock or date.today
        self.system_prompt = system_prompt
        self.turn_states: Dict[str, TurnState] = {}

    def build_system_prompt(self) -> str:
        return self.system_prompt or build_system_prompt(self.clock())

    async def _transition(self, result: TurnResult, state: TurnState) -> None:
        result.state = state
        self.turn_states[result.turn_id] = state
        await self.bus.emit(result.turn_id, "turn_state", {"state": state.value})

    async def _append(self, result: TurnResult, message: Message) -> Message:
        message.turn_id = result.turn_id
        await self.store.append_message(result.conversation_id, message)
        await self.bus.emit(result.turn_id, "message_added", {"message": message.model_dump()})
        return message

    async def _retract_status(self, result: TurnResult) -> None:
        if not result.status_ids:
            return
        removed = await self.store.remove_messages(result.conversation_id, result.status_ids)
        result.status_ids = []
        if removed:
            await self.bus.emit(result.turn_id, "messages_removed", {"message_ids": removed})

    async def _append_user_message(
        self, result: TurnResult, content: str, attachment: Optional[ResolvedAttachment]
    ) -> Message:
        conversation = await self.store.get_conversation(result.conversation_id)
        if conversation is None:
            raise KeyError(f"conversation {result.conversation_id} not found")
        first_user_message = not any(m.role == "user" for m in conversation.messages)

        text = content
        attachments = None
        if attachment is not None:
            if attachment.is_image:
                attachments = Attachments(uploaded_image=attachment.url)
            else:
                text = f"{content}\n\n{attachment.reference_text()}".strip()
        message = await self._append(result, Message(role="user", content=text, attachments=attachments))

        if first_user_message and conversation.title_source == "default":
            seed = content.strip() or (attachment.name if attachment else "")
            if seed:
                title = derive_title(seed)
                await self.store.set_title(result.conversation_id, title, "auto")
                await self.bus.emit(
                    result.turn_id, "title_updated", {"title": title, "title_source": "auto"}
                )
        return message

    def _wire_history_message(
        self, message: Message, current_id: str, attachment: Optional[ResolvedAttachment]
    ) -> Dict[str, Any]:
        wire = message.to_wire()
        uploaded = message.attachments.uploaded_image if message.attachments else None
        if not uploaded:
            return wire
        if message.id == current_id and attachment is not None and attachment.data_url:
            wire["content"] = [
                {"type": "text", "text": message.content or ""},
                {"type": "image_url", "image_url": {"url": attachment.data_url}},
            ]
        else:
            wire["content"] = f"{message.content or ''}\n[Attached image: {uploaded}]".strip()
        return wire

    async def _build_outbound(
        self, result: TurnResult, user_message: Message, attachment: Optional[ResolvedAttachment]
    ) -> List[Dict[str, Any]]:
        history = await self.store.list_messages(result.conversation_id, include_status=False)
        outbound: List[Dict[str, Any]] = [{"role": "system", "content": self.build_system_prompt()}]
        for message in history:
            # Stored system entries are error notices for the reader, not model context.
            if message.role == "system":
                continue
            outbound.append(self._wire_history_message(message, user_message.id, attachment))
        return outbound

    async def _complete(
        self,
        result: TurnResult,
        messages: List[Dict[str, Any]],
        settings: AppSettings,
        tools: Optional[List[Dict[str, Any]]],
        cancel_event: asyncio.Event,
    ) -> CompletionResult:
        if settings.stream_responses:

            async def on_token(text: str) -> None:
                await self.bus.emit(result.turn_id, "token", {"text": text})

            call = self.client.complete_streaming(messages, settings, on_token, tools)
        else:
            call = self.client.complete(messages, settings, tools)
        return await _race(call, cancel_event)

    async def _execute_tool(self, call: ToolCall, cancel_event: asyncio.Event) -> Tuple[str, bool]:
        executor = self.executors.get(call.tool_name)
        try:
            if executor is None:
                raise ToolExecutionError(call.tool_name, f"unknown tool '{call.tool_name}'")
            return await _race(executor.execute(call.arguments), cancel_event), True
        except CancellationError:
            raise
        except ToolExecutionError as exc:
            logger.warning("Tool %s (%s) failed: %s", call.tool_name, call.id, exc.reason)
            return json.dumps(exc.to_payload()), False
        except Exception as exc:
            logger.exception("Tool %s (%s) raised unexpectedly", call.tool_name, call.id)
            return json.dumps(ToolExecutionError(call.tool_name, str(exc)).to_payload()), False

    async def _run_tools(
        self, result: TurnResult, calls: List[ToolCall], cancel_event: asyncio.Event
    ) -> Attachments:
        gathered = Attachments()
        for call in calls:
            _check_cancel(cancel_event)
            status = await self._append(
                result, Message(role="system", content=describe_tool_call(call), kind="status")
            )
            result.status_ids.append(status.id)
            output, ok = await self._execute_tool(call, cancel_event)
            if ok and call.tool_name == GENERATE_IMAGE:
                gathered.image_urls.append(output)
            elif ok and call.tool_name == PERFORM_REASONING:
                gathered.reasoning_trace = json.loads(output).get("reasoning")
            result.tool_results.append(
                Message(role="tool", content=output, tool_call_id=call.id, turn_id=result.turn_id)
            )
        if gathered.image_urls:
            gathered.image_url = gathered.image_urls[0]
        return gathered

    async def _append_answer(
        self, result: TurnResult, answer: Answer, settings: AppSettings, attachments: Optional[Attachments] = None
    ) -> Message:
        content = rewrite_image_urls(answer.content, settings.image_base_url)
        if attachments is not None and attachments.is_empty():
            attachments = None
        return await self._append(result, Message(role="assistant", content=content, attachments=attachments))

    async def run_turn(
        self,
        conversation_id: int,
        content: str,
        *,
        attachment: Optional[ResolvedAttachment] = None,
        cancel_event: Optional[asyncio.Event] = None,
        turn_id: Optional[str] = None,
        rename: bool = True,
    ) -> TurnResult:
        turn_id = turn_id or uuid.uuid4().hex
        cancel_event = cancel_event or asyncio.Event()
        settings = self.settings_provider()
        result = TurnResult(turn_id=turn_id, conversation_id=conversation_id)
        self.bus.register_turn(turn_id, conversation_id)
        self.turn_states[turn_id] = TurnState.IDLE
        try:
            _check_cancel(cancel_event)
            user_message = await self._append_user_message(result, content, attachment)
            await self._transition(result, TurnState.AWAITING_INITIAL_COMPLETION)
            outbound = await self._build_outbound(result, user_message, attachment)
            tools = to_openai_tools(list_tools())
            first = await self._complete(result, outbound, settings, tools, cancel_event)

            if isinstance(first, ToolCallsRequested):
                result.tool_calls = list(first.tool_calls)
                await self._transition(result, TurnState.TOOL_EXECUTING)
                gathered = await self._run_tools(result, result.tool_calls, cancel_event)
                _check_cancel(cancel_event)
                await self._transition(result, TurnState.AWAITING_FINAL_COMPLETION)
                call_message = Message(role="assistant", content=first.content, tool_calls=result.tool_calls)
                follow_up = outbound + [call_message.to_wire()] + [m.to_wire() for m in result.tool_results]
                final = await self._complete(result, follow_up, settings, None, cancel_event)
                if isinstance(final, ToolCallsRequested):
                    raise InvalidResponseError("final completion requested further tool calls")
                await self._retract_status(result)
                result.final_message = await self._append_answer(result, final, settings, gathered)
            else:
                result.final_message = await self._append_answer(result, first, settings)
            await self._transition(result, TurnState.DONE)
        except CancellationError:
            logger.info("Turn %s cancelled", turn_id)
            await self._retract_status(result)
            await self._transition(result, TurnState.ABORTED)
            return result
        except asyncio.CancelledError:
            await self._retract_status(result)
            await self._transition(result, TurnState.ABORTED)
            raise
        except (UpstreamError, InvalidResponseError) as exc:
            logger.error(
                "Turn %s failed: %s %s", turn_id, exc, getattr(exc, "detail", "") or ""
            )
            await self._fail(result, _error_summary(exc))
            return result
        except Exception:
            logger.exception("Turn %s failed unexpectedly", turn_id)
            await self._fail(result, UNEXPECTED_ERROR_TEXT)
            return result
        finally:
            self.turn_states.pop(turn_id, None)
            self.bus.release_turn(turn_id)

        if rename:
            await self.maybe_auto_rename(result, settings)
        return result

    async def _fail(self, result: TurnResult, summary: str) -> None:
        await self._retract_status(result)
        result.error = summary
        await self._append(result, Message(role="system", content=f"Error: {summary}"))
        await self._transition(result, TurnState.FAILED)

    async def maybe_auto_rename(self, result: TurnResult, settings: AppSettings) -> Optional[str]:
        """Summarize the opening exchange into a title once a conversation holds two messages.

        Failures are logged and never touch the turn that triggered the rename.
        """
        try:
            return await self._auto_rename(result, settings)
        except Exception as exc:
            logger.warning("Title summarization for conversation %s failed: %s", result.conversation_id, exc)
            return None

    async def _auto_rename(self, result: TurnResult, settings: AppSettings) -> Optional[str]:
        conversation = await self.store.get_conversation(result.conversation_id)
        if conversation is None or conversation.title_source not in ("default", "auto"):
            return None
        dialog = [m for m in conversation.messages if m.role in ("user", "assistant") and not m.is_status]
        if len(dialog) != 2:
            return None
        title = await self.client.summarize_title(dialog, settings)
        title = (title or "").strip()[:MAX_TITLE_CHARS].strip()
        if not title:
            return None
        # The conversation may have been deleted while the summary was pending.
        if await self.store.set_title(result.conversation_id, title, "summary") is None:
            return None
        await self.bus.emit(
            result.turn_id,
            "title_updated",
            {"title": title, "title_source": "summary", "conversation_id": result.conversation_id},
        )
        return title


class TurnManager:
    """At most one in-flight turn per conversation; a new turn cancels the previous one.

    Title summarization for a finished turn runs as a separate task, so it never
    holds the conversation busy.
    """

    def __init__(self, orchestrator: Orchestrator, max_results: int = MAX_KEPT_RESULTS):
        self.orchestrator = orchestrator
        self.tasks: Dict[str, asyncio.Task] = {}
        self.cancel_events: Dict[str, asyncio.Event] = {}
        self.active: Dict[int, str] = {}
        self.turn_conversations: Dict[str, int] = {}
        self.results: "OrderedDict[str, TurnResult]" = OrderedDict()
        self.renames: Dict[str, asyncio.Task] = {}
        self.max_results = max_results
        self._locks: Dict[int, asyncio.Lock] = {}

    def _lock(self, conversation_id: int) -> asyncio.Lock:
        return self._locks.setdefault(conversation_id, asyncio.Lock())

    async def _cancel_and_wait(self, turn_id: str) -> None:
        event = self.cancel_events.get(turn_id)
        if event is not None:
            event.set()
        task = self.tasks.get(turn_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def submit(
        self, conversation_id: int, content: str, attachment: Optional[ResolvedAttachment] = None
    ) -> str:
        async with self._lock(conversation_id):
            previous = self.active.get(conversation_id)
            if previous:
                logger.info("Cancelling turn %s for new turn on conversation %s", previous, conversation_id)
                await self._cancel_and_wait(previous)
            turn_id = uuid.uuid4().hex
            cancel_event = asyncio.Event()
            self.cancel_events[turn_id] = cancel_event
            self.active[conversation_id] = turn_id
            self.turn_conversations[turn_id] = conversation_id
            self.tasks[turn_id] = asyncio.create_task(
                self._run(turn_id, conversation_id, content, attachment, cancel_event)
            )
            return turn_id

    async def _run(
        self,
        turn_id: str,
        conversation_id: int,
        content: str,
        attachment: Optional[ResolvedAttachment],
        cancel_event: asyncio.Event,
    ) -> TurnResult:
        try:
            result = await self.orchestrator.run_turn(
                conversation_id,
                content,
                attachment=attachment,
                cancel_event=cancel_event,
                turn_id=turn_id,
                rename=False,
            )
            self._remember(result)
        finally:
            self.tasks.pop(turn_id, None)
            self.cancel_events.pop(turn_id, None)
            self.turn_conversations.pop(turn_id, None)
            if self.active.get(conversation_id) == turn_id:
                self.active.pop(conversation_id, None)
        if result.state == TurnState.DONE:
            self._start_rename(result)
        return result

    def _remember(self, result: TurnResult) -> None:
        self.results[result.turn_id] = result
        while len(self.results) > self.max_results:
            self.results.popitem(last=False)

    def _start_rename(self, result: TurnResult) -> None:
        settings = self.orchestrator.settings_provider()
        task = asyncio.create_task(self.orchestrator.maybe_auto_rename(result, settings))
        self.renames[result.turn_id] = task
        task.add_done_callback(lambda _: self.renames.pop(result.turn_id, None))

    async def cancel(self, conversation_id: int, wait: bool = False) -> Optional[str]:
        turn_id = self.active.get(conversation_id)
        if not turn_id:
            return None
        if wait:
            await self._cancel_and_wait(turn_id)
        else:
            event = self.cancel_events.get(turn_id)
            if event is not None:
                event.set()
        return turn_id

    def forget_conversation(self, conversation_id: int) -> None:
        """Drop what is remembered about a deleted conversation's turns."""
        for turn_id in [t for t, r in self.results.items() if r.conversation_id == conversation_id]:
            del self.results[turn_id]
        lock = self._locks.get(conversation_id)
        if lock is not None and not lock.locked():
            del self._locks[conversation_id]

    def active_turn(self, conversation_id: int) -> Optional[str]:
        return self.active.get(conversation_id)

    def get(self, turn_id: str) -> Optional[Dict[str, Any]]:
        if turn_id in self.results:
            return self.results[turn_id].to_dict()
        if turn_id in self.tasks:
            state = self.orchestrator.turn_states.get(turn_id, TurnState.IDLE)
            return {
                "turn_id": turn_id,
                "conversation_id": self.turn_conversations.get(turn_id),
                "state": state.value,
                "final_message": None,
                "error": None,
                "tool_calls": [],
            }
        return None

    async def wait(self, turn_id: str, include_rename: bool = True) -> Optional[TurnResult]:
        task = self.tasks.get(turn_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        rename = self.renames.get(turn_id) if include_rename else None
        if rename is not None:
            await asyncio.gather(rename, return_exceptions=True)
        return self.results.get(turn_id)

    async def shutdown(self) -> None:
        for event in list(self.cancel_events.values()):
            event.set()
        tasks = list(self.tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        renames = list(self.renames.values())
        for task in renames:
            task.cancel()
        if renames:
            await asyncio.gather(*renames, return_exceptions=True)
