"""Tests for the non-blocking terminal prompt, driven through OS pipes."""

from __future__ import annotations

import asyncio
import io
import os

import pytest

from sonarcli.auth.prompt import (
    PROMPT_MESSAGE,
    PromptCancelledError,
    PromptUnavailableError,
    TerminalTokenPrompt,
)
from sonarcli.output import OutputFormat, OutputManager, set_output


@pytest.fixture
def pipe():
    """A (reader stream, write fd) pair; both ends are closed afterwards."""
    r, w = os.pipe()
    reader = os.fdopen(r, "rb", buffering=0)
    state = {"w": w}

    def close_writer() -> None:
        if state["w"] is not None:
            os.close(state["w"])
            state["w"] = None

    yield reader, w, close_writer
    close_writer()
    reader.close()


class TestTerminalTokenPrompt:
    def test_first_non_empty_line(self, pipe) -> None:
        reader, w, _ = pipe
        os.write(w, b"\n   \n squ_pasted \nsecond\n")

        token = asyncio.run(TerminalTokenPrompt(reader).read_token())
        assert token == "squ_pasted"

    def test_line_typed_while_waiting(self, pipe) -> None:
        reader, w, _ = pipe

        async def scenario() -> str:
            asyncio.get_running_loop().call_later(0.01, os.write, w, b"squ_late\n")
            return await TerminalTokenPrompt(reader).read_token()

        assert asyncio.run(scenario()) == "squ_late"

    def test_buffered_lines_are_kept_between_reads(self, pipe) -> None:
        reader, w, _ = pipe
        os.write(w, b"one\ntwo\n")

        async def scenario() -> tuple[str, str]:
            prompt = TerminalTokenPrompt(reader)
            return await prompt.read_token(), await prompt.read_token()

        assert asyncio.run(scenario()) == ("one", "two")

    def test_end_of_input_cancels(self, pipe) -> None:
        reader, _, close_writer = pipe
        close_writer()

        with pytest.raises(PromptCancelledError):
            asyncio.run(TerminalTokenPrompt(reader).read_token())

    def test_blank_lines_then_end_of_input_cancels(self, pipe) -> None:
        reader, w, close_writer = pipe
        os.write(w, b"\n\n")
        close_writer()

        with pytest.raises(PromptCancelledError):
            asyncio.run(TerminalTokenPrompt(reader).read_token())

    def test_last_line_without_newline(self, pipe) -> None:
        reader, w, close_writer = pipe
        os.write(w, b"squ_tail")
        close_writer()

        assert asyncio.run(TerminalTokenPrompt(reader).read_token()) == "squ_tail"

    def test_cancel_unregisters_reader(self, pipe) -> None:
        reader, _, _ = pipe

        async def scenario() -> bool:
            task = asyncio.ensure_future(TerminalTokenPrompt(reader).read_token())
            await asyncio.sleep(0.01)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            return asyncio.get_running_loop().remove_reader(reader.fileno())

        assert asyncio.run(scenario()) is False

    def test_stream_without_descriptor_is_unavailable(self) -> None:
        with pytest.raises(PromptUnavailableError):
            asyncio.run(TerminalTokenPrompt(io.StringIO("squ\n")).read_token())

    def test_prompt_shown_even_when_quiet(self, capfd, pipe) -> None:
        set_output(OutputManager(format=OutputFormat.PLAIN, quiet=True))
        reader, w, _ = pipe
        os.write(w, b"squ\n")

        asyncio.run(TerminalTokenPrompt(reader).read_token())
        assert PROMPT_MESSAGE in capfd.readouterr().err
