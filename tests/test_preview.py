"""
Supervisor tests against real child processes. Python's http.server stands in
for the Next.js dev server; dependency installs are switched off.
"""
import asyncio
import os
import signal
import socket
import sys
from collections import deque

import pytest

from webforge import preview
from webforge.errors import NoPackageManagerError, WebforgeError
from webforge.preview import PreviewInstance, PreviewState, PreviewSupervisor, find_free_port

from .conftest import write

HOST = "127.0.0.1"


def http_server(root, pm, host, port):
    return [sys.executable, "-m", "http.server", str(port), "--bind", host]


def never_ready(root, pm, host, port):
    return [sys.executable, "-u", "-c", "import time; print('compiling /page ...'); time.sleep(60)"]


def exits_early(root, pm, host, port):
    return [sys.executable, "-u", "-c", "import sys; print('Error: Cannot find module next'); sys.exit(3)"]


def no_repair(root, log_line=None):
    return None


@pytest.fixture
def pm_found(monkeypatch):
    async def detect(project_dir):
        return "npm"
    monkeypatch.setattr(preview, "detect_package_manager", detect)


@pytest.fixture
def project(tmp_path):
    write(tmp_path, "package.json", '{"dependencies": {"next": "14.2.35"}}')
    write(tmp_path, "index.html", "<h1>hi</h1>")
    return tmp_path


def supervisor(dev_command=http_server, **kw):
    kw.setdefault("ready_timeout", 20)
    return PreviewSupervisor(host=HOST, preferred_port=find_free_port(HOST, 41000),
                             probe_interval=0.1, kill_grace=1.0,
                             dev_command=dev_command, repair=no_repair, **kw)


async def wait_for_state(sup, path, state, timeout=10.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while sup.status(path).state != state and loop.time() < deadline:
        await asyncio.sleep(0.05)
    return sup.status(path)


# ── State machine ─────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_start_reaches_running_and_stop_reaches_stopped(project, pm_found):
    events = []
    sup = supervisor(emit=events.append)
    try:
        st = await sup.start(project, auto_install_deps=False)
        assert st.state == PreviewState.RUNNING
        assert st.url == f"http://{HOST}:{st.port}"
        assert st.pid
        assert st.error is None

        assert await sup.stop(project) is True
        assert sup.status(project).state == PreviewState.STOPPED
        assert sup.status(project).pid is None
        assert any(e["type"] == "preview_status" and e["status"]["state"] == "running" for e in events)
        assert any(e["type"] == "preview_log" for e in events)
    finally:
        await sup.stop_all()


@pytest.mark.asyncio
async def test_second_start_while_running_is_a_no_op(project, pm_found):
    spawned = []

    def counting(*args):
        spawned.append(args)
        return http_server(*args)

    sup = supervisor(counting)
    try:
        first = await sup.start(project, auto_install_deps=False)
        second = await sup.start(project, auto_install_deps=False)
        assert second.pid == first.pid
        assert second.port == first.port
        assert len(spawned) == 1
    finally:
        await sup.stop_all()


@pytest.mark.asyncio
async def test_concurrent_starts_spawn_one_process(project, pm_found):
    spawned = []

    def counting(*args):
        spawned.append(args)
        return http_server(*args)

    sup = supervisor(counting)
    try:
        a, b = await asyncio.gather(sup.start(project, auto_install_deps=False),
                                    sup.start(str(project), auto_install_deps=False))
        assert a.state == b.state == PreviewState.RUNNING
        assert a.pid == b.pid
        assert len(spawned) == 1
    finally:
        await sup.stop_all()


@pytest.mark.asyncio
async def test_readiness_timeout_is_an_error_with_log_tail(project, pm_found):
    sup = supervisor(never_ready, ready_timeout=1.5)
    try:
        st = await sup.start(project, auto_install_deps=False)
        assert st.state == PreviewState.ERROR
        assert st.error.startswith(f"Preview did not become ready at http://{HOST}:")
        assert "Last logs:" in st.error
        assert "compiling /page ..." in st.error
        assert st.pid is None
    finally:
        await sup.stop_all()


@pytest.mark.asyncio
async def test_stop_while_waiting_for_ready_abandons_the_start(project, pm_found):
    sup = supervisor(never_ready, ready_timeout=30)
    task = asyncio.create_task(sup.start(project, auto_install_deps=False))
    try:
        for _ in range(200):
            if sup.status(project).pid:
                break
            await asyncio.sleep(0.05)
        pid = sup.status(project).pid
        assert pid

        assert await sup.stop(project) is True
        st = await asyncio.wait_for(task, 10)
        assert st.state == PreviewState.STOPPED
        assert st.pid is None
        assert st.error is None
        with pytest.raises(ProcessLookupError):
            os.kill(pid, 0)
    finally:
        await sup.stop_all()


@pytest.mark.asyncio
async def test_install_failure_after_stop_keeps_stopped_state(project, pm_found):
    sup = supervisor(never_ready)
    installing = asyncio.Event()
    release = asyncio.Event()

    async def slow_failing_install(inst, pm, root):
        installing.set()
        await release.wait()
        raise WebforgeError("npm install exited with code 1")

    sup._ensure_deps = slow_failing_install
    task = asyncio.create_task(sup.start(project))
    try:
        await asyncio.wait_for(installing.wait(), 10)
        await sup.stop(project)
        release.set()
        st = await asyncio.wait_for(task, 10)
        assert st.state == PreviewState.STOPPED
        assert st.error is None
        assert sup.status(project).state == PreviewState.STOPPED
    finally:
        await sup.stop_all()


@pytest.mark.asyncio
async def test_exit_before_ready_is_an_error(project, pm_found):
    sup = supervisor(exits_early)
    try:
        st = await sup.start(project, auto_install_deps=False)
        assert st.state == PreviewState.ERROR
        assert "exited before it became ready (code=3 signal=n/a)" in st.error
        assert "Cannot find module next" in st.error
    finally:
        await sup.stop_all()


@pytest.mark.asyncio
async def test_killed_server_is_reported_as_crash(project, pm_found):
    sup = supervisor()
    try:
        st = await sup.start(project, auto_install_deps=False)
        os.kill(st.pid, signal.SIGKILL)
        st = await wait_for_state(sup, project, PreviewState.ERROR)
        assert st.state == PreviewState.ERROR
        assert "Preview server crashed (code=n/a signal=SIGKILL)" in st.error

        # error is restartable
        st = await sup.start(project, auto_install_deps=False)
        assert st.state == PreviewState.RUNNING
    finally:
        await sup.stop_all()


@pytest.mark.asyncio
async def test_terminated_server_is_a_clean_stop(project, pm_found):
    sup = supervisor()
    try:
        st = await sup.start(project, auto_install_deps=False)
        os.kill(st.pid, signal.SIGTERM)
        st = await wait_for_state(sup, project, PreviewState.STOPPED)
        assert st.state == PreviewState.STOPPED
        assert st.error is None
    finally:
        await sup.stop_all()


@pytest.mark.asyncio
async def test_missing_manifest_is_an_error(tmp_path, pm_found):
    sup = supervisor()
    st = await sup.start(tmp_path, auto_install_deps=False)
    assert st.state == PreviewState.ERROR
    assert st.error == "No package.json found in the project folder."


@pytest.mark.asyncio
async def test_missing_package_manager_is_an_error(project, monkeypatch):
    async def detect(project_dir):
        raise NoPackageManagerError("No package manager found. Install pnpm or Node.js (npm) to run preview.")
    monkeypatch.setattr(preview, "detect_package_manager", detect)

    st = await supervisor().start(project)
    assert st.state == PreviewState.ERROR
    assert st.error.startswith("No package manager found")


@pytest.mark.asyncio
async def test_repair_runs_before_spawn_and_logs(project, pm_found):
    seen = []

    def repair(root, log_line=None):
        seen.append(root)
        log_line("🛠 Repair: test fixup")

    sup = PreviewSupervisor(host=HOST, ready_timeout=1.0, probe_interval=0.1,
                            dev_command=exits_early, repair=repair)
    try:
        await sup.start(project, auto_install_deps=False)
        assert seen == [project.resolve()]
        assert "🛠 Repair: test fixup" in sup.logs(project)
    finally:
        await sup.stop_all()


@pytest.mark.asyncio
async def test_unknown_project_queries(tmp_path):
    sup = PreviewSupervisor()
    assert await sup.stop(tmp_path) is False
    assert sup.status(tmp_path).state == PreviewState.STOPPED
    assert sup.logs(tmp_path) == []
    assert sup.log_mark(tmp_path) == 0


@pytest.mark.asyncio
async def test_logs_since_mark_only_returns_newer_lines(project, pm_found):
    sup = supervisor(exits_early)
    await sup.start(project, auto_install_deps=False)
    mark = sup.log_mark(project)
    await sup.stop(project)
    assert sup.logs(project, since=mark) == ["■ Preview stopped"]
    assert len(sup.logs(project)) > 1


# ── Log buffer ────────────────────────────────────────────────────────────────

def test_ring_buffer_drops_oldest_lines():
    inst = PreviewInstance("p", HOST, logs=deque(maxlen=5))
    for i in range(8):
        inst.push(f"l{i}")
    assert list(inst.logs) == ["l3", "l4", "l5", "l6", "l7"]
    assert inst.line_count == 8
    assert inst.tail(3) == ["l5", "l6", "l7"]
    assert inst.tail(10, since=6) == ["l6", "l7"]
    assert inst.tail(10, since=8) == []
    assert inst.tail(0) == []
    assert inst.status().last_log == "l7"


def test_push_chunk_splits_lines_and_skips_blanks():
    inst = PreviewInstance("p", HOST)
    inst.push_chunk("ready\r\n\n  \n- Local: http://localhost:3000\n")
    assert list(inst.logs) == ["ready", "- Local: http://localhost:3000"]


# ── Helpers ───────────────────────────────────────────────────────────────────

def test_find_free_port_skips_busy_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((HOST, 0))
        s.listen()
        busy = s.getsockname()[1]
        port = find_free_port(HOST, busy)
        assert port != busy
        assert preview.is_port_free(HOST, port)


@pytest.mark.asyncio
async def test_lockfile_picks_package_manager(tmp_path, monkeypatch):
    async def command_ok(cmd):
        return cmd in {"npm", "yarn"}
    monkeypatch.setattr(preview, "command_ok", command_ok)

    assert await preview.detect_package_manager(tmp_path) == "npm"
    write(tmp_path, "yarn.lock", "")
    assert await preview.detect_package_manager(tmp_path) == "yarn"
    write(tmp_path, "pnpm-lock.yaml", "")
    assert await preview.detect_package_manager(tmp_path) == "yarn"


@pytest.mark.asyncio
async def test_no_package_manager_raises(tmp_path, monkeypatch):
    async def command_ok(cmd):
        return False
    monkeypatch.setattr(preview, "command_ok", command_ok)
    with pytest.raises(NoPackageManagerError):
        await preview.detect_package_manager(tmp_path)


def test_default_dev_command(tmp_path):
    assert preview.default_dev_command(tmp_path, "pnpm", HOST, 3001) == [
        "pnpm", "exec", "next", "dev", "-p", "3001", "-H", HOST]
    assert preview.default_dev_command(tmp_path, "npm", HOST, 3001)[:4] == ["npm", "exec", "next", "--"]
    write(tmp_path, "node_modules/.bin/next", "#!/bin/sh\n")
    assert preview.default_dev_command(tmp_path, "npm", HOST, 3001)[0] == str(tmp_path / "node_modules/.bin/next")
