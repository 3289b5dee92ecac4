"""Tests for ConversationManager."""

import asyncio

import pytest

from agentlink.conversation.conversation import Conversation, ConversationStatus
from agentlink.errors import ConversationNotFound
from agentlink.protocol.message import MessageType, create_notification


class TestStart:
    """Tests for opening conversations."""

    @pytest.mark.asyncio
    async def test_participants_mirror_the_conversation(self, make_node, eventually):
        a = await make_node("a")
        b = await make_node("b")
        c = await make_node("c")

        conv = await a.conversations.start_conversation(["b", "c", "b"], context={"topic": "plans"})

        assert conv.initiator == "a"
        assert conv.participants == ["a", "b", "c"]
        assert conv.status == ConversationStatus.ACTIVE

        for node in (b, c):
            await eventually(lambda node=node: node.conversations.get_conversation(conv.id))
            mirror = node.conversations.get_conversation(conv.id)
            assert mirror.initiator == "a"
            assert mirror.participants == ["a", "b", "c"]
            assert mirror.context == {"topic": "plans"}

    @pytest.mark.asyncio
    async def test_self_is_always_first(self, make_node):
        a = await make_node("a")
        await make_node("b")

        conv = await a.conversations.start_conversation(["b", "a"])

        assert conv.participants == ["a", "b"]

    @pytest.mark.asyncio
    async def test_non_participant_ignores_invitation(self, make_node):
        c = await make_node("c")
        stranger = Conversation(initiator="a", participants=["a", "b"])
        invite = create_notification("a", "c", "conversation_started", {"conversation": stranger.to_wire()})

        await c.router.dispatch(invite)

        assert c.conversations.get_conversation(stranger.id) is None

    @pytest.mark.asyncio
    async def test_invitation_opens_the_participant_log(self, make_node, eventually):
        a = await make_node("a")
        b = await make_node("b")

        conv = await a.conversations.start_conversation(["b"])
        [invitation] = [m for m in conv.messages if m.payload.get("type") == "conversation_started"]

        await eventually(lambda: b.conversations.get_conversation(conv.id))
        mirror = b.conversations.get_conversation(conv.id)
        assert [m.id for m in mirror.messages] == [invitation.id]


class TestMessages:
    """Tests for conversation traffic and logging."""

    @pytest.mark.asyncio
    async def test_send_reaches_other_participants(self, make_node, eventually):
        a = await make_node("a")
        b = await make_node("b")
        conv = await a.conversations.start_conversation(["b"])
        await eventually(lambda: b.conversations.get_conversation(conv.id))

        received = []

        async def listener(conversation, message, content):
            received.append((conversation.id, message.from_agent, content))

        b.conversations.on_message(listener)

        sent = await a.conversations.send_to_conversation(conv.id, {"text": "hello"})

        assert [m.to_agent for m in sent] == ["b"]
        assert all(m.session_id == conv.id for m in sent)
        await eventually(lambda: received)
        assert received == [(conv.id, "a", {"text": "hello"})]

        mirror = b.conversations.get_conversation(conv.id)
        assert mirror.has_message(sent[0].id)
        assert conv.has_message(sent[0].id)

    @pytest.mark.asyncio
    async def test_requests_in_a_session_are_logged(self, make_node, eventually):
        a = await make_node("a")
        b = await make_node("b")
        conv = await a.conversations.start_conversation(["b"])
        await eventually(lambda: b.conversations.get_conversation(conv.id))

        reply = await a.router.request("b", "ping", session_id=conv.id)

        logged = [(m.type, m.from_agent) for m in conv.messages if m.type != MessageType.NOTIFICATION]
        assert logged == [(MessageType.REQUEST, "a"), (MessageType.RESPONSE, "b")]
        await eventually(lambda: b.conversations.get_conversation(conv.id).has_message(reply.id))

    @pytest.mark.asyncio
    async def test_messages_are_not_duplicated(self, make_node):
        a = await make_node("a")
        await make_node("b")
        conv = await a.conversations.start_conversation(["b"])
        [message] = await a.conversations.send_to_conversation(conv.id, {"n": 1})

        assert not conv.append(message)
        assert sum(m.id == message.id for m in conv.messages) == 1

    @pytest.mark.asyncio
    async def test_concurrent_appends_from_both_sides(self, make_node, eventually):
        a = await make_node("a")
        b = await make_node("b")
        conv = await a.conversations.start_conversation(["b"])
        await eventually(lambda: b.conversations.get_conversation(conv.id))
        mirror = b.conversations.get_conversation(conv.id)

        batches = await asyncio.gather(
            *(a.conversations.send_to_conversation(conv.id, {"from": "a", "n": n}) for n in range(20)),
            *(b.conversations.send_to_conversation(conv.id, {"from": "b", "n": n}) for n in range(20)),
        )
        sent = {message.id for batch in batches for message in batch}
        assert len(sent) == 40

        def logged(conversation):
            return {m.id for m in conversation.messages} >= sent

        await eventually(lambda: logged(conv) and logged(mirror))
        for conversation in (conv, mirror):
            ids = [m.id for m in conversation.messages]
            assert len(ids) == len(set(ids))

    @pytest.mark.asyncio
    async def test_unknown_conversation(self, make_node):
        a = await make_node("a")
        with pytest.raises(ConversationNotFound):
            await a.conversations.send_to_conversation("conv-missing", {})


class TestLifecycle:
    """Tests for end / pause / resume / archive."""

    @pytest.mark.asyncio
    async def test_end_notifies_participants(self, make_node, eventually):
        a = await make_node("a")
        b = await make_node("b")
        conv = await a.conversations.start_conversation(["b"])
        await eventually(lambda: b.conversations.get_conversation(conv.id))

        ended = await a.conversations.end_conversation(conv.id)

        assert ended.status == ConversationStatus.COMPLETED
        await eventually(lambda: b.conversations.get_conversation(conv.id).is_ended)

    @pytest.mark.asyncio
    async def test_ended_conversation_rejects_messages(self, make_node):
        a = await make_node("a")
        await make_node("b")
        conv = await a.conversations.start_conversation(["b"])
        await a.conversations.end_conversation(conv.id)
        logged = len(conv.messages)

        with pytest.raises(ValueError):
            await a.conversations.send_to_conversation(conv.id, {"text": "late"})

        await a.router.request("b", "ping", session_id=conv.id)
        assert len(conv.messages) == logged

    @pytest.mark.asyncio
    async def test_end_twice_is_noop(self, make_node):
        a = await make_node("a")
        conv = await a.conversations.start_conversation([])

        await a.conversations.end_conversation(conv.id)
        again = await a.conversations.end_conversation(conv.id)

        assert again.status == ConversationStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, make_node):
        a = await make_node("a")
        conv = await a.conversations.start_conversation([])

        with pytest.raises(ValueError):
            a.conversations.resume_conversation(conv.id)

        assert a.conversations.pause_conversation(conv.id).status == ConversationStatus.PAUSED
        with pytest.raises(ValueError):
            a.conversations.pause_conversation(conv.id)

        assert a.conversations.resume_conversation(conv.id).status == ConversationStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_archive_from_any_state(self, make_node):
        a = await make_node("a")
        conv = await a.conversations.start_conversation([])
        await a.conversations.end_conversation(conv.id)

        archived = a.conversations.archive_conversation(conv.id)

        assert archived.status == ConversationStatus.ARCHIVED
        assert archived.is_ended

    @pytest.mark.asyncio
    async def test_list_filters(self, make_node):
        a = await make_node("a")
        await make_node("b")
        with_b = await a.conversations.start_conversation(["b"])
        alone = await a.conversations.start_conversation([])
        await a.conversations.end_conversation(alone.id)

        assert [c.id for c in a.conversations.list_conversations(participant="b")] == [with_b.id]
        assert [c.id for c in a.conversations.list_conversations(status=ConversationStatus.ACTIVE)] == [with_b.id]
        assert len(a.conversations.list_conversations()) == 2
