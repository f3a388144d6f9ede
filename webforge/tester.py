"""
Runtime probe: loads the running preview in headless Chromium (Playwright)
and reports the first real JS error the page throws. Missing Playwright or
browser binaries skip the probe instead of failing the fix loop.
"""
import logging

log = logging.getLogger("tester")

# Ignore dev-server chatter, React dev warnings and network noise.
NOISE = [
    "favicon", "Warning:", "DevTools", "Download the React",
    "ReactDOM.render", "StrictMode", "[HMR]", "[Fast Refresh]", "webpack-hmr",
    "hot update", "connecting", "react-refresh",
    "net::ERR_", "Failed to load resource",
    "Cross-Origin", "Content-Security-Policy",
]
REAL_SIGNALS = [
    "is not defined", "is not a function",
    "Cannot read prop", "Cannot read properties",
    "SyntaxError", "ReferenceError", "TypeError",
    "Module not found", "does not provide an export",
    "Unhandled Runtime Error", "Hydration failed",
]

OVERLAY_JS = """() => {
    const portal = document.querySelector('nextjs-portal');
    if (portal && portal.shadowRoot) {
        const el = portal.shadowRoot.querySelector('[data-nextjs-dialog-content], .nextjs-container-errors-body, pre');
        return (el ? el.textContent : portal.shadowRoot.textContent || '').trim().slice(0, 800);
    }
    return '';
}"""


def is_real_error(text: str) -> bool:
    low = text.lower()
    return not any(n.lower() in low for n in NOISE) and any(s in text for s in REAL_SIGNALS)


def pick_runtime_error(page_errors: list[dict], console_errors: list[str], overlay: str = "") -> dict | None:
    """Uncaught page errors win, then the Next.js error overlay, then filtered console errors."""
    if page_errors:
        return page_errors[0]
    if overlay and len(overlay) > 15:
        return {"message": overlay.splitlines()[0][:300], "stack": overlay}
    for text in console_errors:
        if is_real_error(text):
            return {"message": text[:500], "stack": None}
    return None


async def probe_runtime_error(url: str, route: str = "/", timeout_ms: int = 30000,
                              settle_ms: int = 1500) -> dict | None:
    """Returns {"message", "stack"} for the first runtime error, or None."""
    try:
        from playwright.async_api import async_playwright, Error as PWError
    except ImportError:
        log.warning("⚠ Playwright unavailable, skipping runtime probe")
        return None

    target = url.rstrip("/") + (route if route.startswith("/") else f"/{route}")
    page_errors: list[dict] = []
    console_errors: list[str] = []

    try:
        async with async_playwright() as pw:
            browser = await pw.chromium.launch(headless=True)
            try:
                page = await browser.new_page(viewport={"width": 1280, "height": 720})
                page.on("pageerror", lambda e: page_errors.append(
                    {"message": getattr(e, "message", str(e)), "stack": getattr(e, "stack", None)}))
                page.on("console", lambda m: console_errors.append(m.text) if m.type == "error" else None)

                log.info(f"🎭 Probing {target}")
                # "load", not "networkidle": the HMR socket never goes idle
                resp = await page.goto(target, timeout=timeout_ms, wait_until="load")
                if resp and resp.status >= 500:
                    body = (await page.inner_text("body"))[:800]
                    return {"message": f"Page returned HTTP {resp.status}", "stack": body}
                await page.wait_for_timeout(settle_ms)
                try:
                    overlay = await page.evaluate(OVERLAY_JS) or ""
                except PWError:
                    overlay = ""
            finally:
                await browser.close()
    except PWError as e:
        # browsers not installed, navigation failure ...
        log.warning(f"⚠ Runtime probe could not run: {e}")
        return None

    found = pick_runtime_error(page_errors, console_errors, overlay)
    if found:
        log.warning(f"⚠ JS error: {found['message'][:160]}")
    else:
        log.info("✅ No blocking JS errors")
    return found
