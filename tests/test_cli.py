"""Tests for the tierstore CLI.

Every invocation builds a fresh orchestrator, so these tests run with
hot=memory and cold=disk: the disk root carries state between commands.

Tests cover:
1. put / get / stat / exists / delete round through the disk cold tier
2. version create / list / get
3. stats and tier output
4. Exit code 2 for missing locators, exit code 1 for configuration errors
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from tierstore.cli import EXIT_ERROR, EXIT_NOT_FOUND, EXIT_OK, main


@pytest.fixture
def base_args(tmp_path: Path) -> list[str]:
    return ["--hot", "memory", "--cold", "disk", "--disk-root", str(tmp_path / "root")]


@pytest.fixture
def input_file(tmp_path: Path) -> Path:
    path = tmp_path / "input.txt"
    path.write_bytes(b"hello tierstore")
    return path


def run(capsys: pytest.CaptureFixture[str], argv: list[str]) -> tuple[int, dict]:
    exit_code = main(argv)
    captured = capsys.readouterr()
    return exit_code, json.loads(captured.out)


class TestCliDataPath:
    """Test cases for put, get, stat, exists and delete."""

    def test_put_then_get_to_file(
        self,
        capsys: pytest.CaptureFixture[str],
        base_args: list[str],
        input_file: Path,
        tmp_path: Path,
    ) -> None:
        exit_code, output = run(
            capsys, [*base_args, "put", "docs/a.txt", "--input", str(input_file)]
        )

        assert exit_code == EXIT_OK
        assert output["backend"] == "hybrid"
        assert output["size"] == 15
        assert output["locator_id"] == "docs/a.txt"

        out_path = tmp_path / "out.txt"
        exit_code, output = run(capsys, [*base_args, "get", "docs/a.txt", "--out", str(out_path)])

        assert exit_code == EXIT_OK
        assert output == {"locator_id": "docs/a.txt", "out": str(out_path), "size": 15}
        assert out_path.read_bytes() == b"hello tierstore"

    def test_get_writes_raw_content_to_stdout(
        self,
        capsysbinary: pytest.CaptureFixture[bytes],
        base_args: list[str],
        input_file: Path,
    ) -> None:
        assert main([*base_args, "put", "doc", "--input", str(input_file)]) == EXIT_OK
        capsysbinary.readouterr()

        exit_code = main([*base_args, "get", "doc"])

        assert exit_code == EXIT_OK
        assert capsysbinary.readouterr().out == b"hello tierstore"

    def test_stat_reports_serving_tier(
        self, capsys: pytest.CaptureFixture[str], base_args: list[str], input_file: Path
    ) -> None:
        run(capsys, [*base_args, "put", "doc", "--input", str(input_file)])

        exit_code, output = run(capsys, [*base_args, "stat", "doc"])

        assert exit_code == EXIT_OK
        assert output["backend"] == "hybrid"
        assert output["backend_fields"]["served_by"] == "cold"
        assert output["backend_fields"]["tier_backend"] == "disk"

    def test_exists_and_delete(
        self, capsys: pytest.CaptureFixture[str], base_args: list[str], input_file: Path
    ) -> None:
        run(capsys, [*base_args, "put", "doc", "--input", str(input_file)])

        exit_code, output = run(capsys, [*base_args, "exists", "doc"])
        assert exit_code == EXIT_OK
        assert output == {"exists": True, "locator_id": "doc"}

        exit_code, output = run(capsys, [*base_args, "delete", "doc"])
        assert exit_code == EXIT_OK
        assert output == {"deleted": True, "locator_id": "doc"}

        exit_code, output = run(capsys, [*base_args, "exists", "doc"])
        assert exit_code == EXIT_NOT_FOUND
        assert output["exists"] is False

    def test_delete_missing_is_ok(
        self, capsys: pytest.CaptureFixture[str], base_args: list[str]
    ) -> None:
        exit_code, output = run(capsys, [*base_args, "delete", "never-written"])

        assert exit_code == EXIT_OK
        assert output["deleted"] is True


class TestCliVersions:
    """Test cases for version subcommands."""

    def test_create_list_and_get(
        self,
        capsys: pytest.CaptureFixture[str],
        base_args: list[str],
        tmp_path: Path,
    ) -> None:
        version_ids = []
        for message in ("v1", "v2"):
            path = tmp_path / f"{message}.txt"
            path.write_bytes(message.encode())
            exit_code, output = run(
                capsys,
                [*base_args, "version", "create", "doc", "-m", message, "--input", str(path)],
            )
            assert exit_code == EXIT_OK
            assert output["record"]["commit_message"] == message
            version_ids.append(output["version_id"])

        exit_code, output = run(capsys, [*base_args, "version", "list", "doc"])

        assert exit_code == EXIT_OK
        assert [v["commit_message"] for v in output["versions"]] == ["v2", "v1"]

        out_path = tmp_path / "v1-out.txt"
        exit_code, _ = run(
            capsys,
            [*base_args, "version", "get", "doc", version_ids[0], "--out", str(out_path)],
        )

        assert exit_code == EXIT_OK
        assert out_path.read_bytes() == b"v1"


class TestCliMaintenance:
    """Test cases for stats and tier."""

    def test_stats(self, capsys: pytest.CaptureFixture[str], base_args: list[str]) -> None:
        exit_code, output = run(capsys, [*base_args, "--access-threshold", "2", "stats"])

        assert exit_code == EXIT_OK
        assert output["hot"]["backend"] == "memory"
        assert output["cold"]["backend"] == "disk"
        assert output["backup"]["stats"] == "same as cold"
        assert output["config"]["access_threshold"] == 2

    def test_tier(self, capsys: pytest.CaptureFixture[str], base_args: list[str]) -> None:
        exit_code, output = run(capsys, [*base_args, "tier"])

        assert exit_code == EXIT_OK
        assert output == {"demoted_locators": [], "demotion_policy": None, "swept_patterns": 0}


class TestCliErrors:
    """Test cases for error exit codes."""

    def test_get_missing_locator(
        self, capsys: pytest.CaptureFixture[str], base_args: list[str]
    ) -> None:
        exit_code, output = run(capsys, [*base_args, "get", "missing", "--out", "unused"])

        assert exit_code == EXIT_NOT_FOUND
        assert output["ok"] is False
        assert output["error"]["code"] == "NOT_FOUND"

    def test_unknown_version(
        self, capsys: pytest.CaptureFixture[str], base_args: list[str]
    ) -> None:
        exit_code, output = run(
            capsys, [*base_args, "version", "get", "doc", "0" * 32, "--out", "unused"]
        )

        assert exit_code == EXIT_NOT_FOUND
        assert output["error"]["code"] == "NOT_FOUND"

    def test_object_store_cold_without_bucket(
        self, capsys: pytest.CaptureFixture[str], tmp_path: Path
    ) -> None:
        exit_code, output = run(
            capsys, ["--cold", "object_store", "--disk-root", str(tmp_path), "stats"]
        )

        assert exit_code == EXIT_ERROR
        assert output["error"]["code"] == "CONFIG_ERROR"
        assert "TIERSTORE_S3_BUCKET" in output["error"]["message"]

    def test_invalid_access_threshold(
        self, capsys: pytest.CaptureFixture[str], base_args: list[str]
    ) -> None:
        exit_code, output = run(capsys, [*base_args, "--access-threshold", "0", "stats"])

        assert exit_code == EXIT_ERROR
        assert output["error"]["code"] == "CONFIG_ERROR"

    def test_presign_unsupported_on_disk(
        self, capsys: pytest.CaptureFixture[str], base_args: list[str]
    ) -> None:
        exit_code, output = run(capsys, [*base_args, "presign", "doc"])

        assert exit_code == EXIT_ERROR
        assert output["error"]["code"] == "UnsupportedOperationError"

    def test_missing_input_file(
        self, capsys: pytest.CaptureFixture[str], base_args: list[str], tmp_path: Path
    ) -> None:
        exit_code, output = run(
            capsys, [*base_args, "put", "doc", "--input", str(tmp_path / "nope.txt")]
        )

        assert exit_code == EXIT_ERROR
        assert output["error"]["code"] == "INVALID_ARGUMENT"

    def test_no_command_prints_help(self, capsys: pytest.CaptureFixture[str]) -> None:
        exit_code = main([])

        assert exit_code == EXIT_OK
        assert "usage" in capsys.readouterr().out.lower()
