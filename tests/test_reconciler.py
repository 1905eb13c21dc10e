"""Tests for transcript reconciliation."""

from notebook_chat.core import Message
from notebook_chat.normalizer import SourceLookup
from notebook_chat.reconciler import (
    UNREADABLE_MESSAGE,
    MergeResult,
    MessageReconciler,
    TranscriptState,
)


def human(id, text, session_id="nb_u"):
    return Message(id=id, session_id=session_id, role="human", content=text)


def ai(id, text, session_id="nb_u"):
    return Message(id=id, session_id=session_id, role="ai", content=text)


def row(id, type, content, session_id="nb_u"):
    return {"id": id, "session_id": session_id, "message": {"type": type, "content": content}}


class TestMessageReconciler:

    def test_starts_empty(self):
        rec = MessageReconciler("nb_u")
        assert rec.state is TranscriptState.EMPTY
        assert rec.messages == []

    def test_load_marks_loaded(self):
        rec = MessageReconciler("nb_u")
        rec.load([])
        assert rec.state is TranscriptState.LOADED

    def test_same_row_twice_yields_one_message(self):
        rec = MessageReconciler("nb_u")
        lookup = SourceLookup()
        assert rec.ingest(row(42, "ai", "Answer"), lookup) is MergeResult.APPENDED
        assert rec.ingest(row(42, "ai", "Answer"), lookup) is MergeResult.DUPLICATE
        assert [m.id for m in rec.messages] == [42]

    def test_placeholder_replaced_in_place(self):
        rec = MessageReconciler("nb_u")
        rec.load([ai(1, "Welcome")])
        placeholder = rec.add_placeholder("hello")
        rec.merge(ai(2, "unrelated"))

        result = rec.merge(human(42, "hello"))

        assert result is MergeResult.REPLACED
        assert [m.id for m in rec.messages] == [1, 42, 2]
        assert placeholder.id not in [m.id for m in rec.messages]
        assert rec.pending == []

    def test_placeholder_candidate_after_persisted_copy_is_dropped(self):
        rec = MessageReconciler("nb_u")
        rec.merge(human(42, "hello"))
        candidate = Message(id="temp-1", session_id="nb_u", role="human", content="hello")
        assert rec.merge(candidate) is MergeResult.DUPLICATE
        assert len(rec) == 1

    def test_repeated_question_still_replaces_its_placeholder(self):
        rec = MessageReconciler("nb_u")
        rec.merge(human(10, "hello"))
        rec.merge(ai(11, "hi"))
        rec.add_placeholder("hello")

        assert rec.merge(human(12, "hello")) is MergeResult.REPLACED
        assert [m.id for m in rec.messages] == [10, 11, 12]

    def test_double_delivery_within_window_is_dropped(self):
        rec = MessageReconciler("nb_u")
        rec.merge(human(1000, "hello"))
        assert rec.merge(human(1500, "hello")) is MergeResult.DUPLICATE
        assert len(rec) == 1

    def test_same_text_outside_window_is_kept(self):
        rec = MessageReconciler("nb_u", duplicate_window=100)
        rec.merge(human(1000, "hello"))
        assert rec.merge(human(1500, "hello")) is MergeResult.APPENDED
        assert len(rec) == 2

    def test_equal_ai_text_is_not_deduplicated(self):
        rec = MessageReconciler("nb_u")
        rec.merge(ai(1, "I don't know."))
        assert rec.merge(ai(2, "I don't know.")) is MergeResult.APPENDED

    def test_initial_batch_keeps_repeated_questions(self):
        rec = MessageReconciler("nb_u")
        rec.load([human(1, "again?"), ai(2, "yes"), human(3, "again?"), ai(3, "dup id")])
        assert [m.id for m in rec.messages] == [1, 2, 3]

    def test_sentinel_never_lands(self):
        rec = MessageReconciler("nb_u")
        assert rec.merge(ai(5, "WORKFLOW WAS STARTED")) is MergeResult.FILTERED
        assert rec.merge(human(6, "Workflow was started")) is MergeResult.FILTERED
        rec.load([ai(7, "workflow was started"), ai(8, "real")])
        assert [m.id for m in rec.messages] == [8]

    def test_unreadable_row_becomes_error_message(self):
        rec = MessageReconciler("nb_u")
        lookup = SourceLookup()
        rec.load_rows([
            row(1, "human", "hi"),
            {"id": 2, "session_id": "nb_u", "message": ["not", "a", "message"]},
            row(3, "ai", "still here"),
        ], lookup)

        assert [m.id for m in rec.messages] == [1, 2, 3]
        assert rec.messages[1].role == "ai"
        assert rec.messages[1].content == UNREADABLE_MESSAGE
        # Redelivery of the same bad row stays idempotent
        assert rec.ingest({"id": 2, "session_id": "nb_u", "message": 5}, lookup) is MergeResult.DUPLICATE

    def test_awaiting_response_ends_with_answer(self):
        rec = MessageReconciler("nb_u")
        rec.add_placeholder("q")
        assert rec.awaiting_response
        rec.merge(ai(10, "a"))
        assert not rec.awaiting_response

    def test_awaiting_response_ends_when_placeholder_persisted(self):
        rec = MessageReconciler("nb_u")
        rec.add_placeholder("q")
        rec.merge(human(9, "q"))
        assert rec.pending == []
        assert not rec.awaiting_response

        # A sentinel answer never lands, and nothing is left to wait for
        assert rec.merge(ai(10, "Workflow was started")) is MergeResult.FILTERED
        assert not rec.awaiting_response

    def test_awaiting_response_while_other_placeholder_pending(self):
        rec = MessageReconciler("nb_u")
        rec.add_placeholder("first")
        rec.add_placeholder("second")
        rec.merge(human(9, "first"))
        assert rec.awaiting_response

    def test_discard_rolls_back_placeholder(self):
        rec = MessageReconciler("nb_u")
        placeholder = rec.add_placeholder("q")
        assert rec.discard(placeholder.id)
        assert rec.messages == []
        assert not rec.awaiting_response
        assert not rec.discard(placeholder.id)

    def test_clear_resets(self):
        rec = MessageReconciler("nb_u")
        rec.load([human(1, "x")])
        rec.clear()
        assert rec.state is TranscriptState.EMPTY
        assert rec.messages == []

    def test_local_ids_strictly_increase(self):
        rec = MessageReconciler("nb_u")
        ids = [rec.next_local_id() for _ in range(50)]
        assert ids == sorted(set(ids))

    def test_add_local(self):
        rec = MessageReconciler("nb_u")
        message = rec.add_local("ai", "note")
        assert rec.messages == [message]
        assert isinstance(message.id, int)
        assert rec.add_local("ai", "workflow was started") is None
