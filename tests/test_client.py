"""
Unit tests for the backend client.

Tests think-tag stripping, connection settings, parameter routing, and
abort of in-flight requests. No network access.
"""

import asyncio

import pytest

from taleweaver.core.client import ConnectionSettings, OpenAIBackend, ThinkTagParser
from taleweaver.core.errors import BackendAborted


def feed_all(parser, chunks):
    visible, thinking = [], []
    for chunk in chunks:
        v, t = parser.feed(chunk)
        visible.append(v)
        thinking.append(t)
    v, t = parser.flush()
    visible.append(v)
    thinking.append(t)
    return "".join(visible), "".join(thinking)


class TestThinkTagParser:
    """Tests for ThinkTagParser."""

    def test_plain_text_passes_through(self):
        visible, thinking = feed_all(ThinkTagParser(), ["Hello ", "there."])
        assert visible == "Hello there."
        assert thinking == ""

    def test_think_block_removed(self):
        visible, thinking = feed_all(ThinkTagParser(), ["<think>plan</think>You enter."])
        assert visible == "You enter."
        assert thinking == "plan"

    def test_tag_split_across_chunks(self):
        """Tags may arrive in pieces."""
        visible, thinking = feed_all(ThinkTagParser(), ["Hello <thi", "nk>secret</th", "ink> world"])
        assert visible == "Hello  world"
        assert thinking == "secret"

    def test_unclosed_think_is_hidden(self):
        visible, thinking = feed_all(ThinkTagParser(), ["Start<think>never ends"])
        assert visible == "Start"
        assert thinking == "never ends"

    def test_reset(self):
        parser = ThinkTagParser()
        parser.feed("<think>half")
        parser.reset()
        assert feed_all(parser, ["clean"]) == ("clean", "")


class TestConnectionSettings:
    """Tests for ConnectionSettings."""

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("LLM_BASE_URL", "http://llm:8080/v1")
        monkeypatch.setenv("LLM_API_KEY", "secret")
        monkeypatch.setenv("LLM_MODEL", "tiny")

        settings = ConnectionSettings.from_env()

        assert settings.api_url == "http://llm:8080/v1"
        assert settings.api_key == "secret"
        assert settings.model == "tiny"

    def test_from_env_defaults(self, monkeypatch):
        for name in ("LLM_BASE_URL", "LLM_API_KEY", "LLM_MODEL"):
            monkeypatch.delenv(name, raising=False)

        settings = ConnectionSettings.from_env()

        assert settings.api_url == "http://localhost:5001/v1/"
        assert settings.api_key == ""


class TestOpenAIBackend:
    """Tests for OpenAIBackend internals."""

    def test_split_params(self):
        kwargs, extra = OpenAIBackend._split_params({"temperature": 0.6, "min_p": 0.03, "seed": 1})
        assert kwargs == {"temperature": 0.6, "seed": 1}
        assert extra == {"min_p": 0.03}

    def test_client_rebuilt_when_url_changes(self):
        backend = OpenAIBackend()
        first = backend._get_client(ConnectionSettings(api_url="http://a/v1"))
        again = backend._get_client(ConnectionSettings(api_url="http://a/v1"))
        other = backend._get_client(ConnectionSettings(api_url="http://b/v1"))

        assert first is again
        assert other is not first

    def test_abort_raises_backend_aborted(self):
        """abort() turns the in-flight request into BackendAborted."""
        backend = OpenAIBackend()

        async def scenario():
            request = asyncio.create_task(backend._run(asyncio.sleep(10)))
            await asyncio.sleep(0)
            await asyncio.sleep(0)
            backend.abort()
            with pytest.raises(BackendAborted):
                await request

        asyncio.run(scenario())

        assert backend.is_abort_error(BackendAborted())
        assert not backend.is_abort_error(RuntimeError())

    def test_caller_cancellation_propagates(self):
        """Cancelling the caller is not reported as an abort."""
        backend = OpenAIBackend()

        async def scenario():
            request = asyncio.create_task(backend._run(asyncio.sleep(10)))
            await asyncio.sleep(0)
            request.cancel()
            with pytest.raises(asyncio.CancelledError):
                await request

        asyncio.run(scenario())

    def test_abort_without_request_is_noop(self):
        OpenAIBackend().abort()

    def test_uses_current_instructor_retry_exception(self):
        """The retry exception is taken from instructor's non-deprecated location."""
        from taleweaver.core import client

        core = pytest.importorskip("instructor.core")
        if not hasattr(core, "InstructorRetryException"):
            pytest.skip("instructor release without the core exports")

        assert client.InstructorRetryException is core.InstructorRetryException
