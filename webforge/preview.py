"""
Preview supervisor: at most one Next.js dev server per project path.

State machine:
    stopped → starting → running
    starting → error        (early exit, spawn failure, readiness timeout)
    running  → stopped      (exit code 0, SIGTERM, SIGINT)
    running  → error        (any other exit)
error and stopped can both be started again.

Exit handlers are bound to the process they were created for. A handler
whose process is no longer the instance's current one does nothing, so a
replaced or stopped server can never overwrite the state of a newer one.
"""
import asyncio, logging, os, signal, socket, shutil, sys
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable

import requests

from . import config
from .applier import command_ok
from .errors import NoPackageManagerError, WebforgeError
from .repair import repair_project

log = logging.getLogger("preview")

LOCKFILES = (("pnpm-lock.yaml", "pnpm"), ("package-lock.json", "npm"), ("yarn.lock", "yarn"))
FALLBACK_ORDER = ("pnpm", "npm", "yarn")
PORT_SCAN = 50
DEFAULT_LOG_TAIL = 250


class PreviewState(str, Enum):
    STOPPED  = "stopped"
    STARTING = "starting"
    RUNNING  = "running"
    ERROR    = "error"


@dataclass
class PreviewStatus:
    project_path: str
    state: PreviewState = PreviewState.STOPPED
    host: str | None = None
    port: int | None = None
    url: str | None = None
    pid: int | None = None
    started_at: str | None = None
    error: str | None = None
    last_log: str | None = None

    def to_dict(self) -> dict:
        return {
            "projectPath": self.project_path, "state": self.state.value, "host": self.host,
            "port": self.port, "url": self.url, "pid": self.pid, "startedAt": self.started_at,
            "error": self.error, "lastLog": self.last_log,
        }


@dataclass
class PreviewInstance:
    project_path: str
    host: str
    state: PreviewState = PreviewState.STOPPED
    port: int | None = None
    url: str | None = None
    pid: int | None = None
    started_at: str | None = None
    error: str | None = None
    logs: deque = field(default_factory=lambda: deque(maxlen=config.MAX_LOG_LINES))
    proc: asyncio.subprocess.Process | None = None
    generation: int = 0
    line_count: int = 0
    on_line: Callable[[str], None] | None = None
    tasks: set = field(default_factory=set)

    def push(self, line: str):
        self.logs.append(line)
        self.line_count += 1
        log.debug(f"[{Path(self.project_path).name}] {line}")
        if self.on_line:
            self.on_line(line)

    def push_chunk(self, text: str):
        for line in text.splitlines():
            if line.strip():
                self.push(line)

    def tail(self, n: int, since: int = 0) -> list[str]:
        """Last n lines, limited to those pushed after line number `since`."""
        lines = list(self.logs)
        fresh = self.line_count - since
        if fresh < len(lines):
            lines = lines[len(lines) - max(fresh, 0):]
        return lines[-n:] if n > 0 else []

    def status(self) -> PreviewStatus:
        return PreviewStatus(
            project_path=self.project_path, state=self.state, host=self.host, port=self.port,
            url=self.url, pid=self.pid, started_at=self.started_at, error=self.error,
            last_log=self.logs[-1] if self.logs else None,
        )


# ── Helpers ───────────────────────────────────────────────────────────────────

def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def is_port_free(host: str, port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        try:
            s.bind((host, port))
            return True
        except OSError:
            return False


def find_free_port(host: str, preferred: int) -> int:
    for port in range(preferred, min(preferred + PORT_SCAN, 65536)):
        if is_port_free(host, port):
            return port
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((host, 0))
        return s.getsockname()[1]


async def detect_package_manager(project_dir) -> str:
    """Lockfile first (when that manager is installed), then pnpm, npm, yarn."""
    root = Path(project_dir)
    available = {pm: await command_ok(pm) for pm in FALLBACK_ORDER}
    for lockfile, pm in LOCKFILES:
        if (root / lockfile).exists() and available[pm]:
            return pm
    for pm in FALLBACK_ORDER:
        if available[pm]:
            return pm
    raise NoPackageManagerError("No package manager found. Install pnpm or Node.js (npm) to run preview.")


def next_bin(project_dir) -> Path | None:
    name = "next.cmd" if sys.platform == "win32" else "next"
    p = Path(project_dir) / "node_modules" / ".bin" / name
    return p if p.exists() else None


def default_dev_command(project_dir, pm: str, host: str, port: int) -> list[str]:
    """Run next directly when installed; package-manager exec otherwise."""
    args = ["dev", "-p", str(port), "-H", host]
    nb = next_bin(project_dir)
    if nb:
        return [str(nb), *args]
    if pm == "npm":
        return ["npm", "exec", "next", "--", *args]
    return [pm, "exec", "next", *args]


def http_probe(url: str, timeout: float = config.PROBE_TIMEOUT) -> bool:
    """Any HTTP response counts as ready."""
    try:
        r = requests.get(url, timeout=timeout, stream=True)
        r.close()
        return True
    except requests.RequestException:
        return False


async def kill_process_tree(proc: asyncio.subprocess.Process, grace: float = config.KILL_GRACE):
    """SIGTERM the process group, SIGKILL it if still alive after the grace window."""
    if proc.returncode is not None:
        return

    def send(sig):
        try:
            if hasattr(os, "killpg"):
                os.killpg(proc.pid, sig)
            else:
                proc.send_signal(sig)
        except (ProcessLookupError, PermissionError):
            try:
                proc.send_signal(sig)
            except ProcessLookupError:
                pass

    send(signal.SIGTERM)
    try:
        await asyncio.wait_for(proc.wait(), grace)
        return
    except asyncio.TimeoutError:
        pass
    send(getattr(signal, "SIGKILL", signal.SIGTERM))
    try:
        await asyncio.wait_for(proc.wait(), 5)
    except asyncio.TimeoutError:
        log.warning(f"   ⚠ pid {proc.pid} did not exit after SIGKILL")


def _exit_parts(returncode: int) -> tuple[int | None, str | None]:
    if returncode is not None and returncode < 0:
        try:
            return None, signal.Signals(-returncode).name
        except ValueError:
            return None, str(-returncode)
    return returncode, None


# ── Supervisor ────────────────────────────────────────────────────────────────

class PreviewSupervisor:
    """
    Owns the preview instances of one process. start() is serialized per
    project path; stop() is not, and makes an in-flight start give up.
    """

    def __init__(self, host: str = None, preferred_port: int = None,
                 ready_timeout: float = None, probe_interval: float = None,
                 kill_grace: float = None, error_tail: int = None,
                 dev_command=default_dev_command, repair=repair_project, emit=None):
        self.host           = host or config.PREVIEW_HOST
        self.preferred_port = preferred_port or config.PREVIEW_PORT
        self.ready_timeout  = config.READY_TIMEOUT if ready_timeout is None else ready_timeout
        self.probe_interval = config.PROBE_INTERVAL if probe_interval is None else probe_interval
        self.kill_grace     = config.KILL_GRACE if kill_grace is None else kill_grace
        self.error_tail     = error_tail or config.ERROR_LOG_TAIL
        self.dev_command    = dev_command
        self.repair         = repair
        self.emit           = emit
        self._instances: dict[str, PreviewInstance] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    # ── Queries ───────────────────────────────────────────────────────────────

    @staticmethod
    def key(project_path) -> str:
        return str(Path(project_path).resolve())

    def status(self, project_path) -> PreviewStatus:
        key = self.key(project_path)
        inst = self._instances.get(key)
        return inst.status() if inst else PreviewStatus(project_path=key)

    def logs(self, project_path, tail: int = DEFAULT_LOG_TAIL, since: int = 0) -> list[str]:
        inst = self._instances.get(self.key(project_path))
        return inst.tail(tail, since) if inst else []

    def log_mark(self, project_path) -> int:
        """Number of log lines pushed so far; pass to logs(since=...) to read only newer ones."""
        inst = self._instances.get(self.key(project_path))
        return inst.line_count if inst else 0

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def start(self, project_path, port: int = None, auto_install_deps: bool = True) -> PreviewStatus:
        key = self.key(project_path)
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            st = await self._start(key, port, auto_install_deps)
        self._emit_status(st)
        return st

    async def stop(self, project_path) -> bool:
        inst = self._instances.get(self.key(project_path))
        if inst is None:
            return False
        inst.generation += 1
        proc, inst.proc, inst.pid = inst.proc, None, None
        if proc is not None:
            await kill_process_tree(proc, self.kill_grace)
        inst.state = PreviewState.STOPPED
        inst.error = None
        inst.push("■ Preview stopped")
        log.info(f"■ Preview stopped: {inst.project_path}")
        self._emit_status(inst.status())
        return True

    async def stop_all(self):
        for key in list(self._instances):
            await self.stop(key)

    # ── Internals ─────────────────────────────────────────────────────────────

    def _instance(self, key: str) -> PreviewInstance:
        inst = self._instances.get(key)
        if inst is None:
            inst = PreviewInstance(project_path=key, host=self.host)
            inst.on_line = lambda line, k=key: self._emit_log(k, line)
            self._instances[key] = inst
        return inst

    def _emit_log(self, key: str, line: str):
        if self.emit:
            self.emit({"type": "preview_log", "project": key, "line": line})

    def _emit_status(self, st: PreviewStatus):
        if self.emit:
            self.emit({"type": "preview_status", "status": st.to_dict()})

    def _fail(self, inst: PreviewInstance, message: str) -> PreviewStatus:
        inst.state = PreviewState.ERROR
        inst.error = message
        inst.push(f"✖ {message}")
        log.error(f"✖ Preview failed: {message.splitlines()[0]}")
        return inst.status()

    def _tail_text(self, inst: PreviewInstance) -> str:
        return "\n".join(inst.tail(self.error_tail))

    async def _start(self, key: str, port: int | None, auto_install_deps: bool) -> PreviewStatus:
        inst = self._instance(key)
        if inst.state == PreviewState.RUNNING and inst.proc is not None and inst.proc.returncode is None:
            return inst.status()

        inst.state = PreviewState.STARTING
        inst.host = self.host
        inst.error = None
        inst.started_at = _now_iso()
        gen = inst.generation
        root = Path(key)
        inst.push(f"▶ Starting preview for {key}")
        log.info(f"🌐 Starting preview for {key}")

        if not (root / "package.json").exists():
            return self._fail(inst, "No package.json found in the project folder.")

        if inst.proc is not None:
            prev, inst.proc, inst.pid = inst.proc, None, None
            await kill_process_tree(prev, self.kill_grace)

        inst.port = find_free_port(self.host, port or inst.port or self.preferred_port)
        inst.url = f"http://{self.host}:{inst.port}"

        try:
            pm = await detect_package_manager(root)
        except NoPackageManagerError as e:
            return self._fail(inst, e.message)
        inst.push(f"ℹ Using package manager: {pm}")

        reinstall = False
        try:
            res = await asyncio.to_thread(self.repair, root, log_line=inst.push)
            reinstall = bool(res and res.reinstall_needed)
        except Exception as e:
            inst.push(f"⚠ Repair step failed: {e}")

        if auto_install_deps:
            try:
                await self._ensure_deps(inst, pm, root)
                if reinstall:
                    inst.push("📦 Re-installing dependencies after repair…")
                    await self._run_capture(inst, pm, ["install"], root)
            except WebforgeError as e:
                if inst.generation != gen:
                    return inst.status()
                return self._fail(inst, f"Failed to install dependencies: {e.message}")

        if inst.generation != gen:
            return inst.status()

        cmd = self.dev_command(root, pm, self.host, inst.port)
        inst.push(f"▶ {' '.join(cmd)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd, cwd=str(root),
                stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE,
                env={**os.environ, "PORT": str(inst.port), "HOSTNAME": self.host},
                start_new_session=True, limit=1 << 20)
        except OSError as e:
            return self._fail(inst, str(e))

        if inst.generation != gen:
            await kill_process_tree(proc, self.kill_grace)
            return inst.status()

        inst.proc, inst.pid = proc, proc.pid
        self._watch(inst, proc)

        if await self._wait_ready(inst, proc):
            inst.state = PreviewState.RUNNING
            inst.push(f"✅ Preview ready: {inst.url}")
            log.info(f"✅ Preview ready: {inst.url}")
            return inst.status()

        if inst.proc is not proc:
            # exited (exit handler set the state) or stopped meanwhile
            return inst.status()

        inst.proc, inst.pid = None, None
        await kill_process_tree(proc, self.kill_grace)
        return self._fail(inst, f"Preview did not become ready at {inst.url}.\n\nLast logs:\n{self._tail_text(inst)}")

    async def _wait_ready(self, inst: PreviewInstance, proc) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.ready_timeout
        while loop.time() < deadline:
            if inst.proc is not proc:
                return False
            if await asyncio.to_thread(http_probe, f"{inst.url}/"):
                return inst.proc is proc
            await asyncio.sleep(self.probe_interval)
        return False

    def _watch(self, inst: PreviewInstance, proc):
        async def pump(stream):
            async for raw in stream:
                inst.push_chunk(raw.decode("utf-8", "replace"))

        async def watch():
            pumps = [asyncio.create_task(pump(proc.stdout)), asyncio.create_task(pump(proc.stderr))]
            code = await proc.wait()
            await asyncio.wait(pumps, timeout=1.0)
            self._on_exit(inst, proc, code)

        task = asyncio.create_task(watch())
        inst.tasks.add(task)
        task.add_done_callback(inst.tasks.discard)

    def _on_exit(self, inst: PreviewInstance, proc, returncode: int):
        if inst.proc is not proc:
            return
        inst.proc, inst.pid = None, None
        code, sig = _exit_parts(returncode)
        where = f"code={code if code is not None else 'n/a'} signal={sig or 'n/a'}"

        if inst.state == PreviewState.STARTING:
            inst.state = PreviewState.ERROR
            inst.error = (f"Preview server exited before it became ready ({where}).\n\n"
                          f"Last logs:\n{self._tail_text(inst)}")
            inst.push("✖ Preview server exited before it became ready.")
        elif code == 0 or sig in ("SIGTERM", "SIGINT"):
            inst.state = PreviewState.STOPPED
            inst.error = None
            inst.push("■ Preview server exited.")
        else:
            inst.state = PreviewState.ERROR
            inst.error = f"Preview server crashed ({where}).\n\nLast logs:\n{self._tail_text(inst)}"
            inst.push("✖ Preview server crashed.")
        log.info(f"preview {inst.project_path} → {inst.state.value} ({where})")
        self._emit_status(inst.status())

    async def _ensure_deps(self, inst: PreviewInstance, pm: str, root: Path):
        if (root / "node_modules").exists() and next_bin(root):
            return
        inst.push("📦 Installing dependencies…")
        await self._run_capture(inst, pm, ["install"], root)

    async def _run_capture(self, inst: PreviewInstance, cmd: str, args: list[str], cwd: Path):
        inst.push(f"▶ {cmd} {' '.join(args)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                shutil.which(cmd) or cmd, *args, cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.STDOUT,
                env={**os.environ}, limit=1 << 20)
        except OSError as e:
            raise WebforgeError(str(e)) from e
        async for raw in proc.stdout:
            inst.push_chunk(raw.decode("utf-8", "replace"))
        code = await proc.wait()
        if code != 0:
            msg = f"{cmd} {' '.join(args)} exited with code {code}"
            inst.push(f"✖ {msg}")
            raise WebforgeError(msg)
