"""Tests for context shaping."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from relay.app.core.tokenizer import count_message_tokens, estimate_tokens
from relay.app.services.context_budget import (
    SUMMARY_PREFIX,
    TRUNCATION_MARKER,
    ContextBudgeter,
    truncate_text,
)


def turn(role, length, fill="x"):
    return {"role": role, "content": fill * length}


class TestTokenEstimate:

    def test_four_chars_per_token_rounded_up(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2

    def test_multipart_content_uses_json(self):
        message = {"role": "user", "content": [{"type": "text", "text": "hi"}]}
        assert count_message_tokens([message]) > 0


class TestShape:

    @pytest.fixture
    def budgeter(self):
        return ContextBudgeter(max_tokens=1000, max_messages=50)

    def test_fits_unchanged(self, budgeter):
        messages = [turn("system", 40), turn("user", 40), turn("assistant", 40)]

        shaped = budgeter.shape(messages)

        assert shaped.messages == messages
        assert shaped.tokens_used == 30
        assert shaped.tokens_remaining == 970
        assert shaped.was_truncated is False
        assert shaped.original_count == 2
        assert shaped.processed_count == 2

    def test_empty(self, budgeter):
        shaped = budgeter.shape([])
        assert shaped.messages == []
        assert shaped.tokens_used == 0
        assert shaped.was_truncated is False

    def test_newest_turns_win(self, budgeter):
        messages = [turn("system", 40)] + [
            turn("user" if i % 2 == 0 else "assistant", 400, fill=str(i)) for i in range(6)
        ]

        shaped = budgeter.shape(messages, token_ceiling=310)

        assert shaped.messages[0] == messages[0]
        assert shaped.messages[-1] == messages[-1]
        assert shaped.messages[-2] == messages[-2]
        assert shaped.tokens_used <= 310
        assert shaped.was_truncated is True

    def test_crossing_message_is_cut_head_and_tail(self, budgeter):
        old = {"role": "user", "content": "HEAD" + "m" * 2000 + "TAIL"}
        new = turn("assistant", 400)

        shaped = budgeter.shape([old, new], token_ceiling=300)

        cut = shaped.messages[0]["content"]
        assert TRUNCATION_MARKER in cut
        assert cut.startswith("HEAD")
        assert cut.endswith("TAIL")
        assert shaped.tokens_used <= 300
        assert shaped.processed_count == 2

    def test_older_messages_dropped_after_cut(self, budgeter):
        messages = [turn("user", 2000), turn("assistant", 2000), turn("user", 400)]
        shaped = budgeter.shape(messages, token_ceiling=300)
        assert shaped.processed_count == 2
        assert shaped.original_count == 3

    def test_only_leading_system_message_is_pinned(self, budgeter):
        messages = [turn("user", 4000), turn("system", 40), turn("user", 40)]
        shaped = budgeter.shape(messages, token_ceiling=30)
        assert shaped.messages[1] == messages[1]
        assert TRUNCATION_MARKER in shaped.messages[0]["content"]
        assert shaped.tokens_used <= 30

    def test_system_message_over_ceiling_is_truncated(self, budgeter):
        system = turn("system", 4000)
        shaped = budgeter.shape([system, turn("user", 40)], token_ceiling=100)

        assert shaped.messages[0]["role"] == "system"
        assert TRUNCATION_MARKER in shaped.messages[0]["content"]
        assert shaped.tokens_used <= 100
        assert shaped.was_truncated is True

    def test_non_positive_ceiling_keeps_system(self, budgeter):
        shaped = budgeter.shape([turn("system", 40), turn("user", 40)], token_ceiling=0)
        assert shaped.messages[0]["role"] == "system"
        assert shaped.tokens_used == 0
        assert shaped.processed_count == 0

    def test_multipart_message_is_dropped_not_cut(self, budgeter):
        image_turn = {
            "role": "user",
            "content": [
                {"type": "text", "text": "x" * 4000},
                {"type": "image_url", "image_url": {"url": "https://x/y.png"}},
            ],
        }
        shaped = budgeter.shape([image_turn, turn("user", 40)], token_ceiling=100)
        assert shaped.processed_count == 1
        assert shaped.was_truncated is True

    def test_max_messages(self):
        budgeter = ContextBudgeter(max_tokens=100000, max_messages=5)
        messages = [turn("user", 4) for _ in range(12)]

        shaped = budgeter.shape(messages)

        assert shaped.processed_count == 5
        assert shaped.was_truncated is True

    @pytest.mark.parametrize("ceiling", [0, 1, 5, 7, 50, 123, 999, 5000])
    def test_never_exceeds_ceiling(self, budgeter, ceiling):
        messages = [turn("system", 97)] + [
            turn("user" if i % 2 else "assistant", 37 * i + 13) for i in range(20)
        ]

        shaped = budgeter.shape(messages, token_ceiling=ceiling)

        assert shaped.tokens_used <= ceiling
        assert shaped.tokens_used == count_message_tokens(shaped.messages)
        assert shaped.messages[0]["role"] == "system"


class TestTruncateText:

    def test_fitting_text_unchanged(self):
        assert truncate_text("abc", 10) == "abc"

    def test_tiny_budget_keeps_head_only(self):
        assert truncate_text("abcdefghijklmnop" * 10, 2) == "abcdefgh"


class TestChunking:

    def test_short_text_is_one_chunk(self):
        assert ContextBudgeter.chunk_text("short", 100) == ["short"]

    def test_breaks_at_sentence_when_past_half(self):
        text = "a" * 70 + "." + "b" * 100
        chunks = ContextBudgeter.chunk_text(text, 100)
        assert chunks[0] == "a" * 70 + "."
        assert "".join(chunks) == text
        assert all(len(c) <= 100 for c in chunks)

    def test_hard_break_when_period_too_early(self):
        text = "a" * 10 + "." + "b" * 200
        chunks = ContextBudgeter.chunk_text(text, 100)
        assert len(chunks[0]) == 100
        assert "".join(chunks) == text


class TestProcessDocument:

    @pytest.mark.asyncio
    async def test_small_document_sent_whole(self):
        budgeter = ContextBudgeter()
        scorer = AsyncMock()

        prompt = await budgeter.process_document("tiny doc", "what?", scorer)

        assert prompt.total_chunks == 1
        assert "tiny doc" in prompt.messages[0]["content"]
        assert "Question: what?" in prompt.messages[0]["content"]
        scorer.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_top_chunks_selected_by_score(self):
        budgeter = ContextBudgeter()
        text = "".join(c * 100 for c in "abcdefg")

        async def scorer(prompt):
            for c in "abcdefg":
                if f"Text: {c * 100}" in prompt:
                    return {"a": "2", "b": "9", "c": "score: 7", "d": "nonsense"}.get(c, "1")
            return "0"

        prompt = await budgeter.process_document(
            text, "which?", scorer, top_n=2, chunk_size=100
        )

        content = prompt.messages[0]["content"]
        assert prompt.total_chunks == 7
        assert prompt.chunks_used == 2
        assert "b" * 100 in content and "c" * 100 in content
        assert "a" * 100 not in content
        assert content.index("b" * 100) < content.index("c" * 100)

    @pytest.mark.asyncio
    async def test_scoring_errors_score_zero(self):
        budgeter = ContextBudgeter()
        scorer = AsyncMock(side_effect=[RuntimeError("boom"), "10"])

        prompt = await budgeter.process_document(
            "x" * 100 + "y" * 100, "q", scorer, top_n=1, chunk_size=100
        )

        assert prompt.scores == [0, 10]
        assert "y" * 100 in prompt.messages[0]["content"]

    @pytest.mark.asyncio
    async def test_scoring_is_capped_at_max_chunks(self):
        budgeter = ContextBudgeter(max_document_chunks=3)
        scorer = AsyncMock(return_value="5")
        text = "".join(c * 100 for c in "abcdefghij")

        prompt = await budgeter.process_document(text, "q", scorer, chunk_size=100)

        assert scorer.await_count == 3
        assert prompt.total_chunks == 10
        assert prompt.chunks_used == 3
        assert "d" * 100 not in prompt.messages[0]["content"]

    @pytest.mark.asyncio
    async def test_scoring_concurrency_is_bounded(self):
        budgeter = ContextBudgeter(scoring_concurrency=2)
        in_flight = 0
        peak = 0

        async def scorer(prompt):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return "1"

        prompt = await budgeter.process_document(
            "x" * 600, "q", scorer, chunk_size=100
        )

        assert len(prompt.scores) == 6
        assert peak == 2


class TestSummarize:

    @pytest.mark.asyncio
    async def test_older_turns_become_summary(self):
        budgeter = ContextBudgeter()
        messages = [turn("system", 20)] + [turn("user", 20, fill=str(i % 10)) for i in range(15)]
        summarizer = AsyncMock(return_value="They talked about numbers.")

        shaped = await budgeter.summarize(messages, summarizer, keep_recent=10)

        assert shaped.summarized is True
        assert shaped.messages[0]["role"] == "system"
        assert SUMMARY_PREFIX + "They talked about numbers." in shaped.messages[0]["content"]
        assert shaped.messages[1:] == messages[-10:]
        assert shaped.original_count == 15
        prompt = summarizer.call_args.args[0]
        assert "user: " + "0" * 20 in prompt

    @pytest.mark.asyncio
    async def test_failure_degrades_to_shape(self):
        budgeter = ContextBudgeter()
        messages = [turn("user", 20) for _ in range(15)]
        summarizer = AsyncMock(side_effect=RuntimeError("upstream down"))

        shaped = await budgeter.summarize(messages, summarizer, keep_recent=10)

        assert shaped.summarized is False
        assert shaped.messages == messages

    @pytest.mark.asyncio
    async def test_short_history_not_summarized(self):
        budgeter = ContextBudgeter()
        summarizer = AsyncMock()
        shaped = await budgeter.summarize([turn("user", 20)], summarizer)
        assert shaped.summarized is False
        summarizer.assert_not_awaited()
