import json
import uuid
from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from orgchat.core.errors import DecodeFailed, NotFound
from orgchat.models.chat import ChatMessage
from orgchat.schemas.chat import MessageMetadata, MessageSource, TextPart, UIMessage
from orgchat.services.chat_service import ChatService
from orgchat.services.message_codec import encode_metadata, encode_parts


@pytest.fixture()
def chat(db, owner):
    return ChatService(db).create_session(owner.organization_id, owner.user_id, "Q1 revenue")


def _user(text):
    return UIMessage(role="user", parts=[TextPart(text=text)])


def _assistant(text, sources=None):
    return UIMessage(
        role="assistant",
        parts=[TextPart(text=text)],
        metadata=MessageMetadata(sources=sources) if sources else None,
    )


def test_create_messages_empty_batch_is_noop(db):
    assert ChatService(db).create_messages([]) == []


def test_created_messages_round_trip_in_order(db, owner, chat):
    service = ChatService(db)
    sources = [MessageSource(document_id="a", title="Report A", url="https://x")]
    m1 = {"chat_session_id": chat.id, "role": "user", "parts": encode_parts([TextPart(text="What was Q1 revenue?")])}
    m2 = {
        "chat_session_id": chat.id,
        "role": "assistant",
        "parts": encode_parts([TextPart(text="$4M")]),
        "meta": encode_metadata(MessageMetadata(sources=sources)),
    }
    inserted = service.create_messages([m1, m2])
    assert [m.role for m in inserted] == ["user", "assistant"]

    decoded = service.get_messages_for_display(chat.id, owner.organization_id, owner.user_id)
    assert [m.role for m in decoded] == ["user", "assistant"]
    assert decoded[0].parts == [TextPart(text="What was Q1 revenue?")]
    assert decoded[0].metadata is None
    assert decoded[1].parts == [TextPart(text="$4M")]
    assert decoded[1].metadata.sources == sources
    assert decoded[0].created_at < decoded[1].created_at


def test_messages_are_ordered_across_turns(db, chat):
    service = ChatService(db)
    history = [_user("one")]
    service.save_turn(chat.id, history, _assistant("1"))
    history += [_assistant("1"), _user("two")]
    service.save_turn(chat.id, history, _assistant("2"))

    rows = service.get_messages(chat.id)
    stamps = [r.created_at for r in rows]
    assert stamps == sorted(stamps)
    assert [json.loads(r.parts)[0]["text"] for r in rows] == ["one", "1", "two", "2"]
    assert service.get_messages_count(chat.id) == 4


def test_save_turn_skips_already_stored_prefix(db, chat):
    service = ChatService(db)
    service.save_turn(chat.id, [_user("one")], _assistant("1"))

    # client resubmits full history plus the new prompt
    history = [_user("one"), _assistant("1"), _user("two")]
    inserted = service.save_turn(chat.id, history, _assistant("2"))

    assert [m.role for m in inserted] == ["user", "assistant"]
    assert service.get_messages_count(chat.id) == 4


def test_save_turn_bumps_session_activity(db, owner, chat):
    service = ChatService(db)
    before = service.get_session(chat.id, owner.organization_id, owner.user_id).updated_at

    service.save_turn(chat.id, [_user("hi")], _assistant("hello"))

    after = service.get_session(chat.id, owner.organization_id, owner.user_id).updated_at
    assert after > before


def test_sources_only_kept_on_assistant_messages(db, owner, chat):
    service = ChatService(db)
    stray = UIMessage(
        role="user",
        parts=[TextPart(text="q")],
        metadata=MessageMetadata(sources=[MessageSource(document_id="x", title="X")]),
    )
    service.save_turn(chat.id, [stray], _assistant("a", [MessageSource(document_id="b", title="Report B")]))

    user, assistant = service.get_messages_for_display(chat.id, owner.organization_id, owner.user_id)
    assert user.metadata is None
    assert assistant.metadata.sources[0].url is None


def test_get_messages_for_display_checks_ownership(db, other_owner, chat):
    with pytest.raises(NotFound):
        ChatService(db).get_messages_for_display(chat.id, other_owner.organization_id, other_owner.user_id)


def test_malformed_row_fails_whole_request(db, owner, chat):
    service = ChatService(db)
    service.save_turn(chat.id, [_user("fine")], _assistant("also fine"))
    bad = ChatMessage(id=uuid.uuid4(), chat_session_id=chat.id, role="assistant", parts="{not json")
    db.add(bad)
    db.commit()
    bad_id = bad.id

    with pytest.raises(DecodeFailed) as exc:
        service.get_messages_for_display(chat.id, owner.organization_id, owner.user_id)
    assert exc.value.message_id == bad_id


def test_get_messages_of_unknown_session_is_empty(db):
    assert ChatService(db).get_messages(uuid.uuid4()) == []
    assert ChatService(db).get_messages_count(uuid.uuid4()) == 0


def test_save_turn_drops_unsaved_assistant_entries(db, chat):
    service = ChatService(db)
    service.save_turn(chat.id, [_user("one")], _assistant("1"))

    # "half" was streamed but never completed, so it was never stored
    history = [_user("one"), _assistant("1"), _user("two"), _assistant("half"), _user("three")]
    inserted = service.save_turn(chat.id, history, _assistant("3"))

    assert [m.role for m in inserted] == ["user", "user", "assistant"]
    rows = service.get_messages(chat.id)
    assert [json.loads(r.parts)[0]["text"] for r in rows] == ["one", "1", "two", "three", "3"]


def test_save_turn_with_short_history_keeps_the_prompt(db, chat):
    service = ChatService(db)
    service.save_turn(chat.id, [_user("one")], _assistant("1"))

    service.save_turn(chat.id, [_user("two")], _assistant("2"))

    rows = service.get_messages(chat.id)
    assert [(r.role, json.loads(r.parts)[0]["text"]) for r in rows] == [
        ("user", "one"),
        ("assistant", "1"),
        ("user", "two"),
        ("assistant", "2"),
    ]


def test_save_turn_on_deleted_session_writes_nothing(db, owner, chat):
    service = ChatService(db)
    chat_id = chat.id
    service.delete_session(chat_id, owner.organization_id, owner.user_id)

    with pytest.raises(NotFound):
        service.save_turn(chat_id, [_user("hi")], _assistant("hello"))
    assert service.get_messages_count(chat_id) == 0


def test_messages_need_an_existing_session(db):
    with pytest.raises(IntegrityError):
        ChatService(db).create_messages(
            [{"chat_session_id": uuid.uuid4(), "role": "user", "parts": encode_parts([TextPart(text="orphan")])}]
        )
    db.rollback()


def test_messages_with_equal_timestamps_sort_by_id(db, chat):
    service = ChatService(db)
    stamp = datetime.now(timezone.utc)
    ids = [uuid.uuid4() for _ in range(3)]
    service.create_messages(
        [
            {
                "id": message_id,
                "chat_session_id": chat.id,
                "role": "user",
                "parts": encode_parts([TextPart(text=str(message_id))]),
                "created_at": stamp,
            }
            for message_id in ids
        ]
    )

    assert [m.id for m in service.get_messages(chat.id)] == sorted(ids)
