"""Tests for token estimation module."""

from contextkeeper.agent.tokens import (
    CHARS_PER_TOKEN,
    IMAGE_TOKENS,
    MESSAGE_OVERHEAD_TOKENS,
    estimate_content_tokens,
    estimate_message_tokens,
    estimate_messages_tokens,
    estimate_tokens,
)


class TestEstimateTokens:
    def test_empty_string(self):
        assert estimate_tokens("") == 0

    def test_basic_text(self):
        text = "Hello, world!"
        assert estimate_tokens(text) == len(text) // CHARS_PER_TOKEN

    def test_longer_text(self):
        assert estimate_tokens("a" * 400) == 100


class TestEstimateContentTokens:
    def test_none(self):
        assert estimate_content_tokens(None) == 0

    def test_text_blocks(self):
        content = [{"type": "text", "text": "a" * 40}, {"type": "text", "text": "b" * 80}]
        assert estimate_content_tokens(content) == 30

    def test_image_block_uses_flat_estimate(self):
        content = [{"type": "image_url", "image_url": {"url": "data:image/png;base64,xxxx"}}]
        assert estimate_content_tokens(content) == IMAGE_TOKENS

    def test_tool_use_block_counts_name_and_input(self):
        block = {"type": "tool_use", "name": "read_file", "input": {"path": "/tmp/x"}}
        assert estimate_content_tokens([block]) > 0


class TestEstimateMessagesTokens:
    def test_empty_messages(self):
        assert estimate_messages_tokens([]) == 0

    def test_single_text_message(self):
        messages = [{"role": "user", "content": "Hello"}]
        assert estimate_messages_tokens(messages) == MESSAGE_OVERHEAD_TOKENS + len("Hello") // CHARS_PER_TOKEN

    def test_tool_calls_are_counted(self):
        plain = {"role": "assistant", "content": ""}
        with_calls = {
            "role": "assistant",
            "content": "",
            "tool_calls": [{
                "id": "call_1",
                "type": "function",
                "function": {"name": "exec", "arguments": '{"command": "ls -la /var/log"}'},
            }],
        }
        assert estimate_message_tokens(with_calls) > estimate_message_tokens(plain)

    def test_sum_of_messages(self):
        messages = [
            {"role": "user", "content": "a" * 100},
            {"role": "assistant", "content": "b" * 200},
        ]
        expected = sum(estimate_message_tokens(m) for m in messages)
        assert estimate_messages_tokens(messages) == expected
