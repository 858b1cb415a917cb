"""Tests for runner.py — stream parsing and the delegated subprocess lifecycle.

The subprocess tests use the current interpreter as a stand-in CLI: the
runner appends the prompt as the last argv element, so each script reads
sys.argv[1] when it needs it.
"""

import json
import os
import sys

import pytest

from runner import (
    NO_RESULT,
    DelegateExitError,
    DelegateInput,
    DelegateRunner,
    DelegateSpawnError,
    DelegateTimeout,
    StreamAccumulator,
    append_tail,
    parse_stream_line,
)
from tools import ToolInputError


def _runner(script, tmp_path, **kw):
    return DelegateRunner(command=[sys.executable, "-c", script], workspace=tmp_path, **kw)


# ─── DelegateInput ───────────────────────────────────────────────


class TestDelegateInput:
    def test_valid_payload(self):
        task = DelegateInput.from_payload({"prompt": " do it ", "working_directory": " /tmp "})
        assert task.prompt == "do it"
        assert task.working_directory == "/tmp"

    def test_blank_working_directory_dropped(self):
        task = DelegateInput.from_payload({"prompt": "x", "working_directory": "  "})
        assert task.working_directory is None
        assert task.to_payload() == {"prompt": "x"}

    @pytest.mark.parametrize("payload", [None, "text", {}, {"prompt": ""}, {"prompt": 5}])
    def test_invalid_payloads(self, payload):
        with pytest.raises(ToolInputError):
            DelegateInput.from_payload(payload)

    def test_non_string_working_directory(self):
        with pytest.raises(ToolInputError, match="working_directory"):
            DelegateInput.from_payload({"prompt": "x", "working_directory": 3})


# ─── Stream parsing ──────────────────────────────────────────────


class TestParseStreamLine:
    def test_result_record(self):
        acc = StreamAccumulator()
        parse_stream_line(json.dumps({"type": "result", "result": "final"}), acc)
        assert acc.result_text == "final"

    def test_assistant_text_uses_last_block(self):
        acc = StreamAccumulator()
        line = json.dumps({"type": "assistant", "message": {"content": [
            {"type": "text", "text": "first"},
            {"type": "tool_use", "id": "x"},
            {"type": "text", "text": "second"},
        ]}})
        parse_stream_line(line, acc)
        assert acc.result_text == "second"

    def test_result_overrides_assistant(self):
        acc = StreamAccumulator()
        parse_stream_line(json.dumps({"type": "assistant", "message": {
            "content": [{"type": "text", "text": "draft"}]}}), acc)
        parse_stream_line(json.dumps({"type": "result", "result": "final"}), acc)
        assert acc.result_text == "final"

    @pytest.mark.parametrize("line", ["not json", "[1, 2]", '{"type": "system"}',
                                      '{"type": "result", "result": 7}'])
    def test_ignored_lines(self, line):
        acc = StreamAccumulator(result_text="keep")
        parse_stream_line(line, acc)
        assert acc.result_text == "keep"


class TestAppendTail:
    def test_under_limit(self):
        assert append_tail("ab", "cd", 10) == "abcd"

    def test_keeps_last_chars(self):
        assert append_tail("abcdef", "gh", 4) == "efgh"

    def test_budget_counts_utf8_bytes(self):
        tail = append_tail("é" * 10, "é" * 10, 8)
        assert tail == "é" * 4
        assert len(tail.encode("utf-8")) == 8

    def test_character_split_by_cut_dropped(self):
        # 15 bytes; the last 4 start inside an "é"
        assert append_tail("", "aé" * 5, 4) == "aé"


# ─── DelegateRunner ──────────────────────────────────────────────


class TestDelegateRunner:
    @pytest.mark.asyncio
    async def test_result_line_wins(self, tmp_path):
        script = (
            "import json, sys\n"
            "print(json.dumps({'type': 'assistant', 'message': {'content': "
            "[{'type': 'text', 'text': 'working'}]}}))\n"
            "print(json.dumps({'type': 'result', 'result': 'done: ' + sys.argv[1]}))\n"
        )
        result = await _runner(script, tmp_path).run(DelegateInput("fix it"))
        assert result == "done: fix it"

    @pytest.mark.asyncio
    async def test_assistant_text_fallback(self, tmp_path):
        script = (
            "import json\n"
            "print(json.dumps({'type': 'assistant', 'message': {'content': "
            "[{'type': 'text', 'text': 'partial answer'}]}}))\n"
        )
        assert await _runner(script, tmp_path).run(DelegateInput("x")) == "partial answer"

    @pytest.mark.asyncio
    async def test_raw_stdout_fallback(self, tmp_path):
        script = "print('plain output')"
        assert await _runner(script, tmp_path).run(DelegateInput("x")) == "plain output\n"

    @pytest.mark.asyncio
    async def test_no_output(self, tmp_path):
        assert await _runner("pass", tmp_path).run(DelegateInput("x")) == NO_RESULT

    @pytest.mark.asyncio
    async def test_unterminated_last_line_parsed(self, tmp_path):
        script = (
            "import json, sys\n"
            "sys.stdout.write(json.dumps({'type': 'result', 'result': 'tail'}))\n"
        )
        assert await _runner(script, tmp_path).run(DelegateInput("x")) == "tail"

    @pytest.mark.asyncio
    async def test_result_truncated(self, tmp_path):
        script = "import json; print(json.dumps({'type': 'result', 'result': 'z' * 100}))"
        runner = _runner(script, tmp_path, result_max_chars=10)
        assert await runner.run(DelegateInput("x")) == "z" * 10

    @pytest.mark.asyncio
    async def test_runs_in_working_directory(self, tmp_path):
        sub = tmp_path / "repo"
        sub.mkdir()
        script = "import os; print(os.getcwd())"
        result = await _runner(script, tmp_path).run(DelegateInput("x", str(sub)))
        assert result.strip() == str(sub.resolve())

    @pytest.mark.asyncio
    async def test_nonzero_exit_reports_stderr(self, tmp_path):
        script = "import sys; sys.stderr.write('bad things'); sys.exit(3)"
        with pytest.raises(DelegateExitError) as exc:
            await _runner(script, tmp_path).run(DelegateInput("x"))
        assert exc.value.returncode == 3
        assert str(exc.value) == "Delegated task exited with code 3: bad things"

    @pytest.mark.asyncio
    async def test_nonzero_exit_without_output(self, tmp_path):
        with pytest.raises(DelegateExitError, match="Process exited with code 1"):
            await _runner("raise SystemExit(1)", tmp_path).run(DelegateInput("x"))

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self, tmp_path):
        pid_file = tmp_path / "child.pid"
        script = (
            "import os, sys, time\n"
            f"with open({str(pid_file)!r}, 'w') as f:\n    f.write(str(os.getpid()))\n"
            "time.sleep(30)\n"
        )
        runner = _runner(script, tmp_path, timeout=1, kill_grace=1)
        with pytest.raises(DelegateTimeout, match="timed out after"):
            await runner.run(DelegateInput("x"))

        pid = int(pid_file.read_text())
        with pytest.raises(ProcessLookupError):
            os.kill(pid, 0)

    @pytest.mark.asyncio
    async def test_stderr_tail_is_byte_bounded(self, tmp_path):
        script = "import sys; sys.stderr.buffer.write('\\u00e9'.encode('utf-8') * 100); sys.exit(1)"
        runner = _runner(script, tmp_path, stderr_tail_bytes=20)
        with pytest.raises(DelegateExitError) as exc:
            await runner.run(DelegateInput("x"))
        assert str(exc.value) == "Delegated task exited with code 1: " + "é" * 10

    @pytest.mark.asyncio
    async def test_timeout_escalates_to_kill(self, tmp_path):
        script = (
            "import signal, time\n"
            "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
            "print('ready', flush=True)\n"
            "time.sleep(30)\n"
        )
        runner = _runner(script, tmp_path, timeout=1, kill_grace=0.2)
        with pytest.raises(DelegateTimeout):
            await runner.run(DelegateInput("x"))

    @pytest.mark.asyncio
    async def test_spawn_error(self, tmp_path):
        runner = DelegateRunner(command=[str(tmp_path / "no-such-binary")], workspace=tmp_path)
        with pytest.raises(DelegateSpawnError, match="spawn error"):
            await runner.run(DelegateInput("x"))
