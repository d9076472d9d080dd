"""Test suite for chat transcripts: optimistic sends, titles and ordering."""

import asyncio

import pytest

from medimate_ai.domain.errors import ConfigurationError, NetworkUnavailable, NotFound, PermissionDenied
from medimate_ai.domain.models import DEFAULT_CHAT_TITLE, chat_path
from medimate_ai.services.chat_list import ChatListMirror
from medimate_ai.services.transcript import ChatTranscriptMirror, derive_title

FLU_QUESTION = "What are the symptoms of the flu and how long do they typically last"


async def open_chat(backend, make_user, answers=None):
    _, identity = await make_user()
    chat_id = await ChatListMirror(backend.store, identity.uid).create()
    transcript = ChatTranscriptMirror(
        backend.store, identity.uid, chat_id, answers=answers if answers is not None else backend.answers
    )
    transcript.open()
    return identity, transcript


def test_derive_title_truncates_long_text():
    assert derive_title(FLU_QUESTION) == "What are the symptoms of the f..."
    assert derive_title("Is aspirin safe now?") == "Is aspirin safe now?"
    assert derive_title("x" * 30) == "x" * 30


@pytest.mark.asyncio
async def test_send_appends_user_and_assistant_messages(backend, make_user, answers):
    identity, transcript = await open_chat(backend, make_user)

    reply = await transcript.send("I have a headache")

    assert reply.role == "assistant"
    assert reply.content == "Rest and drink fluids."
    assert reply.source == "CDC"
    assert answers.questions == ["I have a headache"]
    stored = backend.store.peek(chat_path(identity.uid, transcript.chat_id))
    assert [(m["role"], m["content"]) for m in stored["messages"]] == [
        ("user", "I have a headache"),
        ("assistant", "Rest and drink fluids."),
    ]
    assert [m.role for m in transcript.messages] == ["user", "assistant"]
    assert transcript.sending is False


@pytest.mark.asyncio
async def test_first_message_sets_truncated_title(backend, make_user):
    identity, transcript = await open_chat(backend, make_user)
    assert transcript.session.title == DEFAULT_CHAT_TITLE

    await transcript.send(FLU_QUESTION)
    assert transcript.session.title == "What are the symptoms of the f..."

    await transcript.send("And what about children?")
    stored = backend.store.peek(chat_path(identity.uid, transcript.chat_id))
    assert stored["title"] == "What are the symptoms of the f..."


@pytest.mark.asyncio
async def test_short_first_message_becomes_full_title(backend, make_user):
    _, transcript = await open_chat(backend, make_user)
    await transcript.send("Is aspirin safe now?")
    assert transcript.session.title == "Is aspirin safe now?"


@pytest.mark.asyncio
async def test_renamed_chat_keeps_its_title(backend, make_user):
    identity, transcript = await open_chat(backend, make_user)
    await ChatListMirror(backend.store, identity.uid).rename(transcript.chat_id, "Allergies")

    await transcript.send("Can I take antihistamines daily?")
    assert transcript.session.title == "Allergies"


@pytest.mark.asyncio
async def test_failed_persist_rolls_back_optimistic_message(backend, make_user, answers):
    identity, transcript = await open_chat(backend, make_user)
    await transcript.send("first")
    before = transcript.messages

    backend.store.inject_fault("update", code="permission-denied", path_prefix=chat_path(identity.uid, ""))
    with pytest.raises(PermissionDenied):
        await transcript.send("second")

    assert transcript.messages == before
    assert transcript.error == "Access denied."
    assert answers.questions == ["first"]


@pytest.mark.asyncio
async def test_message_is_visible_before_store_confirms(backend, make_user):
    _, transcript = await open_chat(backend, make_user)
    task = asyncio.create_task(transcript.send("Do I need a flu shot?"))
    await asyncio.sleep(0)

    assert transcript.sending is True
    assert transcript.messages[-1].content == "Do I need a flu shot?"
    await task


@pytest.mark.asyncio
async def test_answer_failure_keeps_stored_user_message(backend, make_user, answers):
    identity, transcript = await open_chat(backend, make_user)
    answers.error = NetworkUnavailable()

    with pytest.raises(NetworkUnavailable):
        await transcript.send("Is this rash serious?")

    # the user message already reached the store, so the local copy keeps it
    stored = backend.store.peek(chat_path(identity.uid, transcript.chat_id))
    assert [m.content for m in transcript.messages] == ["Is this rash serious?"]
    assert [m.id for m in transcript.messages] == [m["id"] for m in stored["messages"]]
    assert transcript.error == NetworkUnavailable.default_message
    assert transcript.sending is False


@pytest.mark.asyncio
async def test_reply_append_failure_matches_store(backend, make_user, answers):
    identity, transcript = await open_chat(backend, make_user)
    path = chat_path(identity.uid, transcript.chat_id)
    answer = answers.answer

    async def answer_then_lose_store(question):
        backend.store.inject_fault("update", code="unavailable", path_prefix=path)
        return await answer(question)

    answers.answer = answer_then_lose_store

    with pytest.raises(NetworkUnavailable):
        await transcript.send("Is this rash serious?")

    stored = backend.store.peek(path)
    assert [m["content"] for m in stored["messages"]] == ["Is this rash serious?"]
    assert [m.content for m in transcript.messages] == ["Is this rash serious?"]
    assert [m.id for m in transcript.messages] == [m["id"] for m in stored["messages"]]


@pytest.mark.asyncio
async def test_missing_answer_service_is_a_configuration_error(backend, make_user):
    _, identity = await make_user()
    chat_id = await ChatListMirror(backend.store, identity.uid).create()
    transcript = ChatTranscriptMirror(backend.store, identity.uid, chat_id, answers=None)
    transcript.open()

    with pytest.raises(ConfigurationError):
        await transcript.send("hello")


@pytest.mark.asyncio
async def test_blank_or_reentrant_sends_are_ignored(backend, make_user, answers):
    _, transcript = await open_chat(backend, make_user)

    assert await transcript.send("   ") is None
    assert await transcript.send("") is None

    first = asyncio.create_task(transcript.send("one"))
    await asyncio.sleep(0)
    assert await transcript.send("two") is None
    await first

    assert answers.questions == ["one"]


@pytest.mark.asyncio
async def test_send_without_loaded_session_is_ignored(backend, make_user):
    _, identity = await make_user()
    transcript = ChatTranscriptMirror(backend.store, identity.uid, "missing", answers=backend.answers)
    assert await transcript.send("hello") is None


@pytest.mark.asyncio
async def test_successive_snapshots_only_grow(backend, make_user):
    """Each pushed message list extends the previous one."""
    identity, transcript = await open_chat(backend, make_user)
    pushes = []
    backend.store.subscribe_document(
        chat_path(identity.uid, transcript.chat_id),
        on_snapshot=lambda s: pushes.append([m["id"] for m in s.data["messages"]]),
    )

    for text in ("a", "b", "c"):
        await transcript.send(text)

    for earlier, later in zip(pushes, pushes[1:]):
        assert len(later) > len(earlier)
        assert later[: len(earlier)] == earlier


@pytest.mark.asyncio
async def test_identical_messages_stay_distinct(backend, make_user):
    _, transcript = await open_chat(backend, make_user)
    await transcript.send("same question")
    await transcript.send("same question")

    user_messages = [m for m in transcript.messages if m.role == "user"]
    assert len(user_messages) == 2
    assert user_messages[0].id != user_messages[1].id


@pytest.mark.asyncio
async def test_deleted_chat_signals_not_found(backend, make_user):
    identity, transcript = await open_chat(backend, make_user)
    redirected = []
    transcript.on_not_found(redirected.append)

    await ChatListMirror(backend.store, identity.uid).delete(transcript.chat_id)

    assert transcript.not_found is True
    assert transcript.session is None
    assert redirected == [transcript.chat_id]
    assert await transcript.send("anyone there?") is None


@pytest.mark.asyncio
async def test_delete_during_send_reports_not_found(backend, make_user, answers):
    identity, transcript = await open_chat(backend, make_user)
    chats = ChatListMirror(backend.store, identity.uid)
    original_answer = answers.answer

    async def answer_after_delete(question):
        await chats.delete(transcript.chat_id)
        return await original_answer(question)

    answers.answer = answer_after_delete
    with pytest.raises(NotFound):
        await transcript.send("hello?")
    assert transcript.sending is False


@pytest.mark.asyncio
async def test_closed_transcript_tolerates_late_completion(backend, make_user):
    _, transcript = await open_chat(backend, make_user)
    task = asyncio.create_task(transcript.send("late"))
    await asyncio.sleep(0)
    transcript.close()

    reply = await task
    assert reply is not None
    assert backend.store.subscription_count() == 0
