"""
Orchestration: prompt → parse → apply, and the bounded auto-fix loop that
restarts the preview and re-prompts the model with what went wrong.
"""
import asyncio, logging, re, uuid
from dataclasses import dataclass, field, asdict
from pathlib import Path

from . import config, deps, prompts
from .applier import apply_changes
from .errors import ModelCancelled, ModelTimeout, NoChangesError, WebforgeError, describe_error
from .llm import CancelToken, create_client
from .parser import parse_response
from .preview import PreviewState, PreviewSupervisor
from .tester import probe_runtime_error

log = logging.getLogger("pipeline")

RE_CODE_CHANGE = re.compile(
    r"\b(fix|debug|repair|implement|add|create|update|modify|refactor|change|generate|scaffold|design|make)\b")
ERROR_SCAN_LINES = 160
FIX_LOG_TAIL = 350
CHECK_LOG_TAIL = 250


def looks_like_code_change_prompt(prompt: str) -> bool:
    return bool(RE_CODE_CHANGE.search((prompt or "").lower()))


def find_likely_error_line(lines: list[str]) -> str | None:
    """Newest line in the last 160 that looks like a build or runtime error."""
    for raw in reversed(lines[-ERROR_SCAN_LINES:]):
        line = (raw or "").strip()
        if not line:
            continue
        low = line.lower()
        if line.startswith("✖"):
            return line
        if low.startswith("error:") or "failed to compile" in low or "module not found" in low:
            return line
        if "cannot find module" in low or "syntaxerror" in low or "referenceerror" in low:
            return line
        if "typeerror" in low or "unhandledrejection" in low or "unhandled rejection" in low:
            return line
    return None


@dataclass
class RunResult:
    summary: str = ""
    applied_files: list[str] = field(default_factory=list)
    installed_dependencies: list[str] = field(default_factory=list)
    skipped_dependencies: list[str] = field(default_factory=list)
    cancelled: bool = False
    error: dict | None = None
    reply: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class FixResult:
    ok: bool
    attempts: int
    last_failure: str | None = None
    cancelled: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


class Pipeline:
    def __init__(self, client=None, supervisor: PreviewSupervisor = None, emit=None,
                 runtime_probe=probe_runtime_error, max_fix: int = None,
                 max_format_retries: int = None, settle_delay: float = None,
                 model_timeout: float = None, infer_deps: bool = None):
        self._client            = client
        self.supervisor         = supervisor or PreviewSupervisor(emit=emit)
        self.emit               = emit
        self.runtime_probe      = runtime_probe
        self.max_fix            = max_fix or config.MAX_FIX
        self.max_format_retries = config.MAX_FORMAT_RETRIES if max_format_retries is None else max_format_retries
        self.settle_delay       = config.FIX_SETTLE_DELAY if settle_delay is None else settle_delay
        self.model_timeout      = model_timeout or config.MODEL_TIMEOUT
        self.infer_deps         = config.INFER_DEPS if infer_deps is None else infer_deps
        self._runs: dict[str, CancelToken] = {}

    @property
    def client(self):
        if self._client is None:
            self._client = create_client()
        return self._client

    def _emit(self, msg: dict):
        if self.emit:
            self.emit(msg)

    # ── Cancellation ──────────────────────────────────────────────────────────

    def cancel(self, request_id: str) -> bool:
        token = self._runs.get(request_id)
        if token is None:
            return False
        log.info(f"⛔ Cancelling request {request_id}")
        token.cancel()
        return True

    async def _chat(self, messages: list[dict], token: CancelToken, request_id: str) -> str:
        client = self.client

        def on_token(tok):
            self._emit({"type": "stream", "id": request_id, "token": tok})

        try:
            return await asyncio.wait_for(
                asyncio.to_thread(client.chat, messages, token, on_token), self.model_timeout)
        except asyncio.TimeoutError:
            token.cancel()
            raise ModelTimeout(f"The model did not answer within {int(self.model_timeout)}s.") from None
        except asyncio.CancelledError:
            token.cancel()
            raise

    # ── Prompt → apply ────────────────────────────────────────────────────────

    def build_messages(self, root: Path, prompt: str) -> list[dict]:
        messages = [
            {"role": "system", "content": prompts.SYSTEM_PROMPT},
            {"role": "system", "content": prompts.file_tree_context(root)},
        ]
        file_ctx = prompts.file_content_context(root, prompt)
        if file_ctx:
            messages.append({"role": "system", "content": file_ctx})
        messages.append({"role": "user", "content": prompt})
        return messages

    def _inferred(self, root: Path, files, requested: list[str]) -> list[str]:
        declared = deps.declared_deps(deps.read_manifest(root))
        extra = [p for p in deps.infer_dependencies(files) if p not in declared and p not in requested]
        if extra:
            log.info(f"   🔎 Imported but undeclared: {extra}")
        return extra

    async def run_prompt_and_apply(self, project_path, prompt: str, require_changes: bool = None,
                                   request_id: str = None) -> RunResult:
        root = Path(project_path).resolve()
        rid = request_id or uuid.uuid4().hex
        token = CancelToken()
        self._runs[rid] = token
        log.info("=" * 60)
        log.info(f"🚀 RUN {rid[:8]}: {prompt[:200]}")

        try:
            if not root.is_dir():
                raise WebforgeError(f"Project path not found: {root}")
            if require_changes is None:
                require_changes = looks_like_code_change_prompt(prompt)

            messages = self.build_messages(root, prompt)
            parsed = None
            for attempt in range(self.max_format_retries + 1):
                text = await self._chat(messages, token, rid)
                parsed = parse_response(text)
                if not require_changes or parsed.has_edits:
                    break
                log.warning(f"⚠️  No File blocks in reply (attempt {attempt + 1}), asking again")
                messages = messages + [
                    {"role": "assistant", "content": text},
                    {"role": "user", "content": prompts.FORMAT_RETRY},
                ]

            if require_changes and not parsed.has_edits:
                raise NoChangesError(prompts.NO_CHANGES)

            requested = list(parsed.dependencies)
            if self.infer_deps:
                requested += self._inferred(root, parsed.files, requested)

            res = await apply_changes(
                root, parsed.files, requested,
                on_write=lambda rel, content: self._emit({"type": "file", "id": rid, "name": rel, "content": content}))

            log.info(f"✅ Applied {len(res.written_files)} file(s), "
                     f"{len(res.installed_dependencies)} dependency(ies) installed")
            return RunResult(
                summary=parsed.summary,
                applied_files=res.written_files,
                installed_dependencies=res.installed_dependencies,
                skipped_dependencies=res.skipped_dependencies,
                reply=prompts.format_reply(parsed.summary, res.written_files, res.installed_dependencies,
                                           res.skipped_dependencies, bool(parsed.files)),
            )
        except ModelCancelled as e:
            log.warning(f"⛔ {e.message}")
            return RunResult(cancelled=True, error=describe_error(e))
        except WebforgeError as e:
            log.error(f"❌ {e.message}")
            return RunResult(error=describe_error(e))
        except Exception as e:
            log.exception(f"❌ Run failed: {e}")
            return RunResult(error=describe_error(e))
        finally:
            self._runs.pop(rid, None)

    # ── Auto-fix loop ─────────────────────────────────────────────────────────

    async def auto_fix(self, project_path, runtime_error: dict = None, route: str = "/",
                       request_id: str = None) -> FixResult:
        route = (route or "/").strip() or "/"
        route = route if route.startswith("/") else f"/{route}"
        last_failure = None
        attempt = 0

        for attempt in range(1, self.max_fix + 1):
            log.info(f"🔧 Auto-fix attempt {attempt}/{self.max_fix}")
            self._emit({"type": "fix_attempt", "id": request_id, "attempt": attempt, "max": self.max_fix})
            status = self.supervisor.status(project_path).to_dict()
            logs = self.supervisor.logs(project_path, FIX_LOG_TAIL)
            prompt = prompts.diagnostic_prompt(attempt, self.max_fix, route, status, runtime_error, logs)

            res = await self.run_prompt_and_apply(project_path, prompt, require_changes=True,
                                                  request_id=request_id)
            if res.cancelled:
                return FixResult(ok=False, attempts=attempt, last_failure=last_failure, cancelled=True)
            if res.error:
                last_failure = res.error["message"]
                break
            if not res.applied_files and not res.installed_dependencies:
                last_failure = ("AI did not return any file updates (no File blocks / Dependencies). "
                                "Try switching to a different model in Settings.")
                break

            mark = self.supervisor.log_mark(project_path)
            await self.supervisor.stop(project_path)
            await self.supervisor.start(project_path)
            await asyncio.sleep(self.settle_delay)

            st = self.supervisor.status(project_path)
            if st.state == PreviewState.ERROR:
                last_failure = st.error or "Preview still failing to start."
                continue
            if st.state != PreviewState.RUNNING:
                last_failure = f"Preview is {st.state.value} after restart."
                continue

            log_err = find_likely_error_line(self.supervisor.logs(project_path, CHECK_LOG_TAIL, since=mark))
            if log_err:
                last_failure = log_err
                continue

            if self.runtime_probe and st.url:
                found = await self.runtime_probe(st.url, route)
                if found:
                    runtime_error = found
                    last_failure = found.get("message") or "Runtime error after restart."
                    continue

            log.info(f"🎉 Preview healthy after {attempt} attempt(s)")
            return FixResult(ok=True, attempts=attempt)

        log.warning(f"⚠️  Auto-fix gave up: {last_failure}")
        return FixResult(ok=False, attempts=attempt, last_failure=last_failure)

    # ── Preview passthrough ───────────────────────────────────────────────────

    async def start_preview(self, project_path, port: int = None, auto_install_deps: bool = True):
        return await self.supervisor.start(project_path, port=port, auto_install_deps=auto_install_deps)

    async def stop_preview(self, project_path) -> bool:
        return await self.supervisor.stop(project_path)

    def preview_status(self, project_path):
        return self.supervisor.status(project_path)

    def preview_logs(self, project_path, tail: int = 250) -> list[str]:
        return self.supervisor.logs(project_path, tail)

    async def shutdown(self):
        await self.supervisor.stop_all()
