"""
Language-model transport. Two providers (Ollama, OpenAI-compatible), both
streamed over `requests` so a CancelToken can stop a request between chunks
or, from another thread, by closing the response under it.
"""
import json, logging, threading
from typing import Callable, Iterator
from urllib.parse import urlsplit, urlunsplit

import requests

from . import config
from .errors import ModelCancelled, ModelError

log = logging.getLogger("llm")

ChatMessage = dict   # {"role": "system"|"user"|"assistant", "content": str}

CONNECT_TIMEOUT = 10
READ_TIMEOUT    = 600


class CancelToken:
    """Cooperative cancellation shared between the caller and a transport thread."""

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._resp = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self):
        with self._lock:
            self._event.set()
            resp, self._resp = self._resp, None
        if resp is not None:
            try:
                resp.close()
            except Exception as e:
                log.debug(f"closing cancelled response: {e}")

    def attach(self, resp):
        with self._lock:
            self._resp = resp
            late = self._event.is_set()
        if late:
            resp.close()

    def detach(self):
        with self._lock:
            self._resp = None

    def check(self):
        if self.cancelled:
            raise ModelCancelled("Request cancelled.")


def _raise_for_status(resp, what: str):
    if 200 <= resp.status_code < 300:
        return
    try:
        body = resp.text[:2000]
    except Exception:
        body = ""
    resp.close()
    raise ModelError(f"{what} error {resp.status_code}: {body or resp.reason}")


class _Client:
    name = "model"

    def chat_stream(self, messages: list[ChatMessage], token: CancelToken | None = None) -> Iterator[str]:
        raise NotImplementedError

    def chat(self, messages: list[ChatMessage], token: CancelToken | None = None,
             on_token: Callable[[str], None] | None = None) -> str:
        full = ""
        for tok in self.chat_stream(messages, token):
            full += tok
            if on_token:
                on_token(tok)
        return full

    def _iter_response(self, resp, token: CancelToken | None, decode) -> Iterator[str]:
        """Shared streaming loop: decode(line) yields text deltas, returns True to stop."""
        if token:
            token.attach(resp)
        try:
            for line in resp.iter_lines():
                if token:
                    token.check()
                if not line:
                    continue
                stop = False
                for delta, done in decode(line):
                    if delta:
                        yield delta
                    stop = stop or done
                if stop:
                    break
            if token:
                token.check()
        except ModelError:
            raise
        except Exception as e:
            if token and token.cancelled:
                raise ModelCancelled("Request cancelled.") from e
            raise ModelError(f"{self.name} stream failed: {e}") from e
        finally:
            if token:
                token.detach()
            resp.close()


# ── Ollama ────────────────────────────────────────────────────────────────────

def candidate_base_urls(raw: str) -> list[str]:
    """localhost may resolve to ::1 while Ollama listens on IPv4 only, so try both spellings."""
    primary = (raw or config.OLLAMA_URL).rstrip("/")
    out = [primary]
    parts = urlsplit(primary)
    host = parts.hostname or ""
    swap = {"localhost": "127.0.0.1", "::1": "127.0.0.1", "127.0.0.1": "localhost"}.get(host)
    if swap:
        netloc = swap + (f":{parts.port}" if parts.port else "")
        alt = urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment)).rstrip("/")
        if alt not in out:
            out.append(alt)
    return out


def connect_help(candidates: list[str], err) -> str:
    return "\n".join([
        "Could not connect to Ollama.",
        "",
        "Tried:",
        *[f"- {c}" for c in candidates],
        "",
        "Fix:",
        "- Make sure Ollama is running (open the Ollama app, or run `ollama serve`).",
        "- Make sure it's listening on port 11434.",
        "- If you use a different host/port, set WEBFORGE_OLLAMA_URL.",
        "- Ensure the model is available: `ollama pull <model>`",
        "",
        f"Details: {err}",
    ])


class OllamaClient(_Client):
    name = "Ollama"

    def __init__(self, base_url: str = None, model: str = None, temperature: float = None,
                 num_predict: int = 4096):
        self.base_url    = (base_url or config.OLLAMA_URL).rstrip("/")
        self.model       = model or config.OLLAMA_MODEL
        self.temperature = config.TEMPERATURE if temperature is None else temperature
        self.num_predict = num_predict

    def _post(self, token: CancelToken | None, messages: list[ChatMessage]):
        candidates = candidate_base_urls(self.base_url)
        last_err = None
        for base in candidates:
            if token:
                token.check()
            try:
                return requests.post(f"{base}/api/chat", json={
                    "model":    self.model,
                    "messages": [{"role": m["role"], "content": m["content"]} for m in messages],
                    "stream":   True,
                    "options":  {"temperature": self.temperature, "num_predict": self.num_predict},
                }, stream=True, timeout=(CONNECT_TIMEOUT, READ_TIMEOUT))
            except requests.ConnectionError as e:
                last_err = e
                log.debug(f"Ollama not reachable at {base}: {e}")
            except requests.RequestException as e:
                raise ModelError(f"Ollama request to {base} failed: {e}") from e
        raise ModelError("Could not connect to Ollama.", detail=connect_help(candidates, last_err))

    def chat_stream(self, messages, token=None):
        resp = self._post(token, messages)
        _raise_for_status(resp, "Ollama")

        def decode(line):
            try:
                chunk = json.loads(line)
            except ValueError:
                return
            yield (chunk.get("message") or {}).get("content", ""), bool(chunk.get("done"))

        yield from self._iter_response(resp, token, decode)


def ensure_model(model: str, base_url: str = None, log_line=None) -> bool:
    """Check Ollama tags; pull the model if missing. Returns True if ready."""
    base = (base_url or config.OLLAMA_URL).rstrip("/")
    say = log_line or (lambda s: log.info(s))
    try:
        r = requests.get(f"{base}/api/tags", timeout=5)
        names = [m.get("name", "") for m in r.json().get("models", [])]
        if any(model == n or model.split(":")[0] == n.split(":")[0] for n in names):
            say(f"   ✅ Model ready: {model}")
            return True
    except (requests.RequestException, ValueError) as e:
        log.warning(f"   Ollama check failed: {e}")

    say(f"   📥 Pulling {model} from Ollama (first time only)…")
    try:
        r = requests.post(f"{base}/api/pull", json={"name": model}, stream=True, timeout=600)
        r.raise_for_status()
        last_pct = -1
        for line in r.iter_lines():
            if not line:
                continue
            try:
                chunk = json.loads(line)
            except ValueError:
                continue
            if chunk.get("total"):
                pct = int(chunk.get("completed", 0) / chunk["total"] * 100)
                if pct != last_pct and pct % 10 == 0:
                    say(f"   📥 {model}: {pct}%")
                    last_pct = pct
            if "success" in chunk.get("status", ""):
                say(f"   ✅ {model} pulled!")
                return True
        return True
    except requests.RequestException as e:
        log.error(f"   ❌ Pull failed: {e}")
        return False


def unload_model(model: str, base_url: str = None):
    """Ask Ollama to drop the model from VRAM now."""
    base = (base_url or config.OLLAMA_URL).rstrip("/")
    try:
        requests.post(f"{base}/api/generate", json={"model": model, "keep_alive": 0}, timeout=8)
        log.info(f"   🗑️  Unloaded {model}")
    except requests.RequestException as e:
        log.debug(f"unload {model} failed: {e}")


# ── OpenAI-compatible ─────────────────────────────────────────────────────────

class OpenAIClient(_Client):
    name = "OpenAI"

    def __init__(self, api_key: str = None, model: str = None, base_url: str = None,
                 temperature: float = None, max_tokens: int | None = None):
        self.api_key     = api_key if api_key is not None else config.OPENAI_API_KEY
        self.model       = model or config.OPENAI_MODEL
        self.base_url    = (base_url or config.OPENAI_BASE_URL).rstrip("/")
        self.temperature = config.TEMPERATURE if temperature is None else temperature
        self.max_tokens  = max_tokens

    def chat_stream(self, messages, token=None):
        if token:
            token.check()
        body = {
            "model":       self.model,
            "messages":    [{"role": m["role"], "content": m["content"]} for m in messages],
            "temperature": self.temperature,
            "stream":      True,
        }
        if self.max_tokens:
            body["max_tokens"] = self.max_tokens
        headers = {"content-type": "application/json"}
        if self.api_key:
            headers["authorization"] = f"Bearer {self.api_key}"
        try:
            resp = requests.post(f"{self.base_url}/v1/chat/completions", json=body, headers=headers,
                                 stream=True, timeout=(CONNECT_TIMEOUT, READ_TIMEOUT))
        except requests.RequestException as e:
            raise ModelError(f"Could not reach {self.base_url}: {e}") from e
        _raise_for_status(resp, "OpenAI")

        def decode(line):
            text = line.decode("utf-8", "replace") if isinstance(line, bytes) else line
            if not text.startswith("data:"):
                return
            data = text[5:].strip()
            if data == "[DONE]":
                yield "", True
                return
            try:
                chunk = json.loads(data)
            except ValueError:
                return
            choices = chunk.get("choices") or [{}]
            yield (choices[0].get("delta") or {}).get("content") or "", False

        yield from self._iter_response(resp, token, decode)


def _is_local(url: str) -> bool:
    return (urlsplit(url).hostname or "") in ("localhost", "127.0.0.1", "::1")


def create_client(provider: str = None, **overrides) -> _Client:
    provider = (provider or config.PROVIDER).lower()
    if provider == "ollama":
        return OllamaClient(**overrides)
    if provider == "openai":
        client = OpenAIClient(**overrides)
        if not client.api_key and not _is_local(client.base_url):
            raise ModelError("OpenAI API key is not set.",
                             detail="Set WEBFORGE_OPENAI_API_KEY or point WEBFORGE_OPENAI_BASE_URL at a local server.")
        return client
    raise ModelError(f"Unknown provider: {provider}")
