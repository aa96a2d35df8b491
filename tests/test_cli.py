"""Tests for the command-line interface."""

import os
import subprocess
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

import ipa2sim

ROOT = Path(__file__).parent.parent


def run_cli(*args, cwd=ROOT):
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(
        p for p in (str(ROOT), env.get("PYTHONPATH")) if p
    )
    for name in list(env):
        if name.startswith("IPA2SIM_"):
            del env[name]
    return subprocess.run(
        [sys.executable, "-m", "ipa2sim", *args],
        capture_output=True,
        text=True,
        cwd=cwd,
        env=env,
    )


class TestCLIHelp:
    """Tests for argument parsing and help output."""

    def test_requires_command(self):
        result = run_cli()
        assert result.returncode != 0
        assert "required" in result.stderr.lower()

    def test_version(self):
        result = run_cli("--version")
        assert result.returncode == 0
        assert ipa2sim.__version__ in result.stdout

    def test_run_help(self):
        result = run_cli("run", "--help")
        assert result.returncode == 0
        assert "archive" in result.stdout
        assert "--working-dir" in result.stdout
        assert "--converter" in result.stdout

    def test_status_help(self):
        result = run_cli("status", "--help")
        assert result.returncode == 0
        assert "--xcrun" in result.stdout


class TestCLIRun:
    """Tests for the 'run' subcommand."""

    def test_missing_archive(self, tmp_path):
        result = run_cli("run", str(tmp_path / "missing.ipa"), "--no-color")
        assert result.returncode == 1
        assert "Archive does not exist" in result.stderr

    def test_full_run(self, tools, archive, working_dir, tmp_path):
        """Test a complete run driven only by command-line flags."""
        result = run_cli(
            "run",
            str(archive),
            "--working-dir", str(working_dir),
            "--unzip", str(tools.unzip()),
            "--converter", str(tools.recorder("simforge")),
            "--codesign", str(tools.recorder("codesign")),
            "--xcrun", str(tools.xcrun()),
            "--no-color",
            cwd=tmp_path,
        )
        assert result.returncode == 0, result.stderr
        lines = result.stderr.strip().splitlines()
        assert lines[-1].endswith("Simulator not booted. Finishing.")
        assert (tmp_path / "App.app").is_dir()

    def test_halted_run_exits_nonzero(self, tools, archive, working_dir, tmp_path):
        result = run_cli(
            "run",
            str(archive),
            "--working-dir", str(working_dir),
            "--unzip", str(tools.unzip(returncode=3)),
            "--no-color",
            cwd=tmp_path,
        )
        assert result.returncode == 1
        assert "Extraction failed. Exit code: 3" in result.stderr

    def test_config_file(self, tools, archive, working_dir, tmp_path):
        config = tmp_path / "ipa2sim.toml"
        config.write_text(
            "[pipeline]\n"
            f'working_dir = "{working_dir}"\n'
            "[tools]\n"
            f'unzip = "{tools.unzip()}"\n'
            f'converter = "{tools.recorder("simforge")}"\n'
            f'codesign = "{tools.recorder("codesign")}"\n'
            f'xcrun = "{tools.xcrun()}"\n'
        )
        result = run_cli("run", str(archive), "--no-color", cwd=tmp_path)
        assert result.returncode == 0, result.stderr
        assert not working_dir.exists()

    def test_missing_config_file(self, archive, tmp_path):
        result = run_cli(
            "run", str(archive), "--config", str(tmp_path / "nope.toml"), "--no-color"
        )
        assert result.returncode == 1
        assert "Config file not found" in result.stderr


class TestCLIStatus:
    """Tests for the 'status' subcommand."""

    def test_booted(self, tools):
        result = run_cli("status", "--xcrun", str(tools.xcrun(booted=True)), "--no-color")
        assert result.returncode == 0
        assert "Simulator booted." in result.stderr

    def test_not_booted(self, tools):
        result = run_cli("status", "--xcrun", str(tools.xcrun()), "--no-color")
        assert result.returncode == 1
        assert "Simulator not booted." in result.stderr


class TestMain:
    """Tests for main() error mapping, called in-process."""

    @pytest.fixture(autouse=True)
    def no_logging_setup(self):
        with patch.object(ipa2sim, "setup_logging"):
            yield

    def test_interrupt(self):
        with patch.object(sys, "argv", ["ipa2sim", "status"]):
            with patch.object(ipa2sim, "_cmd_status", side_effect=KeyboardInterrupt):
                with pytest.raises(SystemExit) as exc:
                    ipa2sim.main()
        assert exc.value.code == 130

    def test_ipa2sim_error(self):
        with patch.object(sys, "argv", ["ipa2sim", "status"]):
            with patch.object(
                ipa2sim, "load_config", side_effect=ipa2sim.ConfigurationError("bad")
            ):
                with pytest.raises(SystemExit) as exc:
                    ipa2sim.main()
        assert exc.value.code == 1

    def test_unexpected_error(self):
        with patch.object(sys, "argv", ["ipa2sim", "status"]):
            with patch.object(ipa2sim, "_cmd_status", side_effect=RuntimeError("boom")):
                with pytest.raises(SystemExit) as exc:
                    ipa2sim.main()
        assert exc.value.code == 1
