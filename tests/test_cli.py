"""Tests for the blockflow command-line interface."""

import argparse
import json
from pathlib import Path

import pytest

from blockflow.cli import cmd_run, cmd_validate

TOOLS_MODULE = """
from blockflow.runner.tool_registry import tool


@tool(description="Upper-case text")
def shout(text: str) -> str:
    return text.upper()
"""


@pytest.fixture
def workflow_file(tmp_path: Path) -> Path:
    path = tmp_path / "workflow.json"
    path.write_text(
        json.dumps(
            {
                "id": "wf-cli",
                "blocks": {
                    "start": {"type": "starter", "name": "Start"},
                    "shout": {
                        "type": "tool",
                        "name": "Shout",
                        "subBlocks": {
                            "tool": {"value": "shout"},
                            "params": {"value": {"text": "<start.input>"}},
                        },
                    },
                },
                "edges": [{"source": "start", "target": "shout"}],
            }
        )
    )
    return path


@pytest.fixture
def tools_file(tmp_path: Path) -> Path:
    path = tmp_path / "my_tools.py"
    path.write_text(TOOLS_MODULE)
    return path


def run_args(workflow: Path, tmp_path: Path, **overrides) -> argparse.Namespace:
    values = {
        "workflow": str(workflow),
        "input": None,
        "trigger": "manual",
        "selected_output": None,
        "stream": False,
        "tools": None,
        "log_dir": str(tmp_path / "executions"),
    }
    values.update(overrides)
    return argparse.Namespace(**values)


class TestValidate:
    def test_valid_workflow(self, workflow_file: Path, capsys):
        assert cmd_validate(argparse.Namespace(workflow=str(workflow_file))) == 0
        assert capsys.readouterr().out.strip() == "OK: 2 blocks, 1 edges, 0 loops, 0 parallels"

    def test_unknown_block_type(self, tmp_path: Path, capsys):
        path = tmp_path / "bad.json"
        path.write_text(json.dumps({"blocks": [{"id": "x", "type": "teleporter"}]}))

        assert cmd_validate(argparse.Namespace(workflow=str(path))) == 1
        assert "unknown type 'teleporter'" in capsys.readouterr().err

    def test_missing_file(self, tmp_path: Path, capsys):
        assert cmd_validate(argparse.Namespace(workflow=str(tmp_path / "nope.json"))) == 1
        assert capsys.readouterr().err.startswith("Error:")


class TestRun:
    def test_run_prints_output_and_logs(
        self, workflow_file: Path, tools_file: Path, tmp_path: Path, capsys
    ):
        args = run_args(workflow_file, tmp_path, input='"hello"', tools=str(tools_file))

        assert cmd_run(args) == 0

        captured = capsys.readouterr()
        assert json.loads(captured.out) == {"result": "HELLO"}
        records = list((tmp_path / "executions").glob("*/record.json"))
        assert len(records) == 1
        record = json.loads(records[0].read_text())
        assert record["status"] == "completed"
        assert record["workflow_id"] == "wf-cli"

    def test_run_failure_exit_code(self, workflow_file: Path, tmp_path: Path, capsys):
        args = run_args(workflow_file, tmp_path, input='"hello"', selected_output=["shout"])

        assert cmd_run(args) == 1
        assert "Unknown tool: shout" in capsys.readouterr().err

    def test_invalid_input_json(self, workflow_file: Path, tmp_path: Path, capsys):
        assert cmd_run(run_args(workflow_file, tmp_path, input="{oops")) == 1
        assert "invalid --input JSON" in capsys.readouterr().err

    def test_stream_mode_emits_sse_and_persists_final_text(
        self, workflow_file: Path, tools_file: Path, tmp_path: Path, capsys
    ):
        args = run_args(
            workflow_file,
            tmp_path,
            input='"hello"',
            tools=str(tools_file),
            trigger="chat",
            selected_output=["shout"],
            stream=True,
        )

        assert cmd_run(args) == 0

        out = capsys.readouterr().out
        records = [r for r in out.split("\n\n") if r]
        assert records[-1] == "data: [DONE]"
        final = json.loads(records[-2][len("data: ") :])
        assert final["data"]["output"] == {"shout": {"result": "HELLO"}}
        record_path = next((tmp_path / "executions").glob("*/record.json"))
        assert json.loads(record_path.read_text())["final_chat_output"] == "HELLO"
