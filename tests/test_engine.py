"""计算引擎与子进程协议"""

import json
import subprocess
from unittest.mock import patch

import pytest

from ai_usage_cost import runner
from ai_usage_cost.engine import LocalEngine, SubprocessEngine, generate_graph, run_method, select_engine
from ai_usage_cost.errors import ProtocolViolation

from conftest import write_jsonl


def completed(returncode=0, stdout=b"", stderr=b""):
    return subprocess.CompletedProcess(args=["python"], returncode=returncode, stdout=stdout, stderr=stderr)


def claude_config(tmp_path):
    write_jsonl(
        tmp_path / "claude" / "s.jsonl",
        [
            {
                "type": "assistant",
                "timestamp": "2025-01-15T10:00:00Z",
                "requestId": "r1",
                "message": {"id": "m1", "model": "gpt-5", "usage": {"input_tokens": 1_000_000}},
            }
        ],
    )
    return {"sources": {name: str(tmp_path / name) for name in ("claude", "codex", "gemini", "opencode", "cursor", "amp", "droid")}}


class TestRunMethod:
    def test_unknown_method(self):
        with pytest.raises(ProtocolViolation):
            run_method("dropTables", {}, {})

    def test_args_must_be_object(self):
        with pytest.raises(ProtocolViolation):
            run_method("finalizeGraph", ["x"], {})

    def test_finalize_rejects_bad_messages(self):
        with pytest.raises(ProtocolViolation):
            run_method("finalizeGraph", {"messages": [{"source": "claude"}], "catalog": {}}, {})

    def test_finalize_rejects_non_object_catalog(self):
        with pytest.raises(ProtocolViolation) as exc_info:
            run_method("finalizeGraph", {"messages": [], "catalog": ["gpt-5"]}, {})
        assert exc_info.value.key == "finalizeGraph"

    def test_finalize_rejects_out_of_range_timestamp(self):
        message = {"source": "claude", "modelId": "gpt-5", "sessionId": "s", "timestamp": 10**20, "tokens": {"input": 1}}
        with pytest.raises(ProtocolViolation):
            run_method("finalizeGraph", {"messages": [message], "catalog": {}}, {})


class TestLocalEngine:
    def test_generate_graph(self, tmp_path, resolver):
        engine = LocalEngine(claude_config(tmp_path))
        result = generate_graph(engine, {"sources": ["claude"]}, resolver)

        assert result["counts"] == {"claude": 1}
        assert result["unpricedModels"] == []
        graph = result["graph"]
        assert graph["summary"]["totalCost"] == pytest.approx(1.25)
        assert graph["contributions"][0]["intensity"] == 4

    def test_unpriced_models_reported(self, tmp_path):
        engine = LocalEngine(claude_config(tmp_path))
        parsed = engine.parse_local_sources({"sources": ["claude"]})
        result = engine.finalize_graph({"messages": parsed["messages"], "catalog": {}})
        assert result["unpricedModels"] == ["gpt-5"]
        assert result["graph"]["summary"]["totalCost"] == 0.0
        assert result["graph"]["summary"]["totalTokens"] == 1_000_000


class TestSubprocessEngine:
    @patch("ai_usage_cost.engine.subprocess.run")
    def test_success(self, mock_run):
        mock_run.return_value = completed(stdout=json.dumps({"messages": [], "counts": {}}).encode())
        engine = SubprocessEngine(python="/usr/bin/python3")
        assert engine.parse_local_sources({}) == {"messages": [], "counts": {}}

        command = mock_run.call_args.args[0]
        assert command[:3] == ["/usr/bin/python3", "-m", "ai_usage_cost.runner"]
        assert mock_run.call_args.kwargs["timeout"] == engine.timeout

    @patch("ai_usage_cost.engine.subprocess.run")
    def test_timeout(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="python", timeout=1)
        with pytest.raises(ProtocolViolation) as exc_info:
            SubprocessEngine(timeout=1).parse_local_sources({})
        assert exc_info.value.stage == "engine"

    @patch("ai_usage_cost.engine.subprocess.run")
    def test_nonzero_exit_reports_structured_error(self, mock_run):
        stderr = b"2025-01-15 WARNING something\n" + json.dumps({"error": "UpstreamFailure", "detail": "offline"}).encode()
        mock_run.return_value = completed(returncode=1, stderr=stderr)
        with pytest.raises(ProtocolViolation, match="UpstreamFailure: offline"):
            SubprocessEngine().finalize_graph({})

    @patch("ai_usage_cost.engine.subprocess.run")
    def test_nonzero_exit_without_json(self, mock_run):
        mock_run.return_value = completed(returncode=2, stderr=b"Traceback ...")
        with pytest.raises(ProtocolViolation, match="Traceback"):
            SubprocessEngine().finalize_graph({})

    @patch("ai_usage_cost.engine.subprocess.run")
    def test_oversized_request_never_spawns(self, mock_run):
        with pytest.raises(ProtocolViolation):
            SubprocessEngine(max_payload_bytes=10).finalize_graph({"messages": ["x" * 100]})
        mock_run.assert_not_called()

    @patch("ai_usage_cost.engine.subprocess.run")
    def test_oversized_response(self, mock_run):
        mock_run.return_value = completed(stdout=b"{" + b" " * 200 + b"}")
        with pytest.raises(ProtocolViolation):
            SubprocessEngine(max_payload_bytes=100).parse_local_sources({})

    @patch("ai_usage_cost.engine.subprocess.run")
    def test_invalid_json_response(self, mock_run):
        mock_run.return_value = completed(stdout=b"not json")
        with pytest.raises(ProtocolViolation):
            SubprocessEngine().parse_local_sources({})

    @patch("ai_usage_cost.engine.subprocess.run")
    def test_spawn_failure(self, mock_run):
        mock_run.side_effect = FileNotFoundError("no python")
        with pytest.raises(ProtocolViolation):
            SubprocessEngine(python="/missing/python").parse_local_sources({})


class TestSelectEngine:
    def test_default_is_local(self):
        assert isinstance(select_engine({"engine": {"mode": "local"}}), LocalEngine)

    def test_subprocess_from_config(self):
        engine = select_engine({"engine": {"mode": "subprocess", "max_payload_bytes": 1024, "timeout_seconds": 5}})
        assert isinstance(engine, SubprocessEngine)
        assert engine.max_payload_bytes == 1024
        assert engine.timeout == 5.0

    def test_unknown_mode_falls_back(self):
        assert isinstance(select_engine({"engine": {"mode": "wasm"}}), LocalEngine)


class TestRunner:
    def test_success_writes_stdout(self, tmp_path, capsys):
        request = tmp_path / "request.json"
        request.write_text(json.dumps({"method": "finalizeGraph", "args": {"messages": [], "catalog": {}}}))
        assert runner.main([str(request)]) == 0
        result = json.loads(capsys.readouterr().out)
        assert result["graph"]["contributions"] == []

    def test_failure_writes_error_as_last_stderr_line(self, tmp_path, capsys):
        request = tmp_path / "request.json"
        request.write_text(json.dumps({"method": "nope", "args": {}}))
        assert runner.main([str(request)]) == 1
        error = json.loads(capsys.readouterr().err.strip().splitlines()[-1])
        assert error["error"] == "ProtocolViolation"
        assert error["stage"] == "engine"
        assert error["key"] == "nope"

    def test_unreadable_request(self, tmp_path, capsys):
        assert runner.main([str(tmp_path / "missing.json")]) == 1
        assert json.loads(capsys.readouterr().err)["error"] == "invalid_request"

    def test_usage(self, capsys):
        assert runner.main([]) == 1
        assert json.loads(capsys.readouterr().err)["error"] == "usage"

    def test_unexpected_exception_is_structured(self, tmp_path, capsys):
        request = tmp_path / "request.json"
        request.write_text(json.dumps({"method": "finalizeGraph", "args": {}}))
        with patch.object(runner, "run_method", side_effect=RuntimeError("boom")):
            assert runner.main([str(request)]) == 1
        captured = capsys.readouterr()
        assert captured.out == ""
        error = json.loads(captured.err.strip().splitlines()[-1])
        assert error["error"] == "internal"
        assert error["stage"] == "engine"
        assert error["key"] == "finalizeGraph"
        assert "boom" in error["detail"]
