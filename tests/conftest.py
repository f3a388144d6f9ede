"""
Shared fixtures for the webforge test suite.

Configures:
- pytest-asyncio for async tests (marked with @pytest.mark.asyncio)
- throwaway Next.js project folders under tmp_path
"""
import json

import pytest

pytest_plugins = ["pytest_asyncio"]


def write(root, rel, content):
    p = root / rel
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(content, encoding="utf-8")
    return p


@pytest.fixture
def next_project(tmp_path):
    """Minimal Next.js project: package.json declaring next/react/react-dom."""
    write(tmp_path, "package.json", json.dumps({
        "name": "site",
        "private": True,
        "dependencies": {"next": "14.2.35", "react": "18.3.1", "react-dom": "18.3.1"},
        "devDependencies": {},
    }, indent=2))
    return tmp_path


@pytest.fixture
def fake_installer(monkeypatch):
    """
    Replaces package-manager probing and execution in the applier.
    `available` lists the managers that answer --version; `fail` lists package
    names whose install fails. Every executed command is recorded in `calls`.
    """
    from webforge import applier

    class Installer:
        available = {"pnpm"}
        fail = set()
        calls = []

    inst = Installer()
    inst.calls = []

    async def command_ok(cmd):
        return cmd in inst.available

    async def run_command(cmd, args, cwd):
        inst.calls.append((cmd, list(args)))
        if any(a in inst.fail for a in args):
            return 1, f"404 Not Found: {args}"
        return 0, "ok"

    monkeypatch.setattr(applier, "command_ok", command_ok)
    monkeypatch.setattr(applier, "run_command", run_command)
    return inst
