import json
import time

from cancellation import CancellationToken
from core_config import (
    BrowserConstants,
    ConfigurationError,
    MessageValidator,
    PageNotReadyError,
    SSEFormatter,
    StreamTimeoutError,
)


class TestSSEFormatter:

    def test_chunks_share_completion_id(self):
        formatter = SSEFormatter()
        a = SSEFormatter.parse(formatter.pack_chunk("Hel"))[0]
        b = SSEFormatter.parse(formatter.pack_chunk("lo"))[0]

        assert a["id"] == b["id"] == formatter.completion_id
        assert a["object"] == "chat.completion.chunk"
        assert a["choices"][0] == {"index": 0, "delta": {"content": "Hel"}, "finish_reason": None}

    def test_finish_ends_with_done(self):
        finish = SSEFormatter().pack_finish()

        assert SSEFormatter.is_finish(finish)
        assert finish.endswith("data: [DONE]\n\n")
        assert SSEFormatter.parse(finish)[0]["choices"][0]["finish_reason"] == "stop"
        assert not SSEFormatter.is_finish(SSEFormatter().pack_chunk("x"))

    def test_error_unit(self):
        unit = SSEFormatter.pack_exception(PageNotReadyError("请先打开目标AI网站"))
        assert json.loads(unit[len("data: "):]) == {
            "error": {"message": "请先打开目标AI网站", "type": "page_not_ready", "code": "page_not_ready"}
        }

    def test_exception_codes(self):
        assert ConfigurationError("x", code="missing_selector").code == "missing_selector"
        assert ConfigurationError("x").code == "config_error"
        assert StreamTimeoutError("x").error_type == "timeout_error"

    def test_non_stream(self):
        body = SSEFormatter("web-browser").pack_non_stream("Hello world")
        assert body["object"] == "chat.completion"
        assert body["choices"][0]["message"] == {"role": "assistant", "content": "Hello world"}


class TestMessageValidator:

    def test_valid_messages(self):
        ok, err, sanitized = MessageValidator.validate([
            {"role": "system", "content": "be brief"},
            {"role": "robot", "content": 42},
        ])

        assert ok and err is None
        assert sanitized == [{"role": "system", "content": "be brief"}, {"role": "user", "content": "42"}]

    def test_content_parts_are_joined(self):
        ok, _, sanitized = MessageValidator.validate([{
            "role": "user",
            "content": [
                {"type": "text", "text": "describe"},
                {"type": "image_url", "image_url": {"url": "https://example.com/a.png"}},
                {"type": "text", "text": "briefly"},
            ],
        }])

        assert ok
        assert sanitized == [{"role": "user", "content": "describe\nbriefly"}]

    def test_rejects_bad_input(self):
        assert MessageValidator.validate(None)[0] is False
        assert MessageValidator.validate([])[0] is False
        assert MessageValidator.validate(["text"])[0] is False

    def test_length_limit(self):
        BrowserConstants.override(MAX_MESSAGE_LENGTH=5)
        ok, err, _ = MessageValidator.validate([{"role": "user", "content": "too long"}])
        assert not ok
        assert "长度" in err

    def test_build_prompt(self):
        prompt = MessageValidator.build_prompt([
            {"role": "system", "content": "S"},
            {"role": "user", "content": "U"},
        ])
        assert prompt == "system: S\n\nuser: U"


class TestBrowserConstants:

    def test_defaults_and_override(self):
        assert BrowserConstants.get("STREAM_CONTENT_SHRINK_TOLERANCE") == 3
        BrowserConstants.override(STREAM_CONTENT_SHRINK_TOLERANCE=7)
        assert BrowserConstants.get("STREAM_CONTENT_SHRINK_TOLERANCE") == 7

    def test_unknown_key_default(self):
        assert BrowserConstants.get("NOT_A_KEY", "fallback") == "fallback"


class TestCancellationToken:

    def test_sleep_completes(self):
        assert CancellationToken().sleep(0.02) is True

    def test_sleep_interrupted(self):
        token = CancellationToken()
        token.cancel("stop")

        start = time.time()
        assert token.sleep(5) is False
        assert time.time() - start < 0.5
        assert token.reason == "stop"

    def test_external_checker(self):
        flag = {"stop": False}
        token = CancellationToken(lambda: flag["stop"])
        assert not token()
        flag["stop"] = True
        assert token.is_cancelled()
