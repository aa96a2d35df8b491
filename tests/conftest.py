"""Shared fixtures: stand-in shell scripts for unzip, simforge, codesign and xcrun."""

import sys
from pathlib import Path

import pytest

from ipa2sim import Settings

if sys.platform == "win32":
    collect_ignore_glob = ["test_*.py"]


class FakeTools:
    """Writes small executable /bin/sh scripts that record their arguments."""

    def __init__(self, root: Path):
        self.bin = root / "bin"
        self.bin.mkdir()
        self.calls = root / "calls.log"

    def tool(self, name: str, body: str) -> Path:
        path = self.bin / name
        path.write_text("#!/bin/sh\n" + body)
        path.chmod(0o755)
        return path

    def recorder(self, name: str, returncode: int = 0) -> Path:
        return self.tool(
            name, f'echo "{name} $*" >> "{self.calls}"\nexit {returncode}\n'
        )

    def unzip(self, frameworks: tuple[str, ...] = (), returncode: int = 0) -> Path:
        lines = [f'echo "unzip $*" >> "{self.calls}"']
        if returncode:
            lines.append(f"exit {returncode}")
        lines += [
            'mkdir -p "$3/Payload/App.app"',
            "printf 'binary' > \"$3/Payload/App.app/App\"",
        ]
        for fw in frameworks:
            lines.append(f'mkdir -p "$3/Payload/App.app/Frameworks/{fw}"')
        lines.append("exit 0")
        return self.tool("unzip", "\n".join(lines) + "\n")

    def xcrun(self, booted: bool = False, install_returncode: int = 0) -> Path:
        listing = "== Devices ==\n-- iOS 17.2 --"
        if booted:
            listing += "\n    iPhone 15 (5C1A2B3D-0000-4000-8000-000000000000) (Booted)"
        body = (
            f'echo "xcrun $*" >> "{self.calls}"\n'
            'if [ "$2" = "list" ]; then\n'
            f"  cat <<'EOF'\n{listing}\nEOF\n"
            "  exit 0\n"
            "fi\n"
            f"exit {install_returncode}\n"
        )
        return self.tool("xcrun", body)

    def read_calls(self) -> list[str]:
        if not self.calls.exists():
            return []
        return self.calls.read_text().splitlines()

    def settings(self, working_dir: Path, **overrides: object) -> Settings:
        # Only write default scripts for tools the caller did not supply,
        # so an already written custom script is not overwritten.
        defaults = {
            "unzip": self.unzip,
            "converter": lambda: self.recorder("simforge"),
            "codesign": lambda: self.recorder("codesign"),
            "xcrun": self.xcrun,
        }
        values: dict[str, object] = {"working_dir": working_dir}
        for key, make in defaults.items():
            values[key] = str(overrides.pop(key)) if key in overrides else str(make())
        values.update(overrides)
        return Settings(**values)


@pytest.fixture
def tools(tmp_path):
    """Fake external tools living in a temporary bin directory."""
    return FakeTools(tmp_path)


@pytest.fixture
def archive(tmp_path):
    """An .ipa archive placeholder; the fake unzip never reads it."""
    path = tmp_path / "App.ipa"
    path.write_bytes(b"PK\x03\x04")
    return path


@pytest.fixture
def working_dir(tmp_path):
    return tmp_path / "ipa_extracted"
