"""Cee: the screen-aware chat assistant answering `@cee` mentions."""

import base64
import os
import re
import subprocess
import sys
import tempfile
import time
from io import BytesIO
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

import mss
import requests
from PIL import Image

from . import config
from .logging_config import log


CEE_USER = "Cee"
CEE_ERROR_TEXT = "Sorry, I encountered an error."
HISTORY_LINES = 20
SCREENSHOT_MAX_WIDTH = 512
JPEG_QUALITY = 80

BASE_SYSTEM_PROMPT = (
    "You are Cee, a helpful AI assistant integrated into a chat application. "
    "You can see the user's screen."
)

OPENAI_URL = "https://api.openai.com/v1/chat/completions"
OPENAI_MODEL = "gpt-4o"
GEMINI_MODEL = "gemini-1.5-flash"
GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

_MENTION_RE = re.compile(r"@cee\b\s*(.*)", re.IGNORECASE | re.DOTALL)

CaptureFn = Callable[[], Optional[str]]


class AgentError(RuntimeError):
    """The assistant could not produce a reply."""


def extract_question(text: str) -> Optional[str]:
    """Return the question following an `@cee` mention, or None when there is none."""
    match = _MENTION_RE.search(str(text or ""))
    if not match:
        return None
    question = match.group(1).strip()
    return question or None


def _encode_jpeg(img: Image.Image) -> str:
    """Downscale to the agent width cap and return base64 JPEG."""
    img = img.convert("RGB")
    if img.width > SCREENSHOT_MAX_WIDTH:
        scale = SCREENSHOT_MAX_WIDTH / float(img.width)
        img = img.resize(
            (SCREENSHOT_MAX_WIDTH, max(1, int(round(img.height * scale)))),
            Image.Resampling.LANCZOS,
        )
    buf = BytesIO()
    img.save(buf, format="JPEG", quality=JPEG_QUALITY)
    return base64.b64encode(buf.getvalue()).decode("ascii")


def _linux_tool_commands(path: str) -> List[List[str]]:
    return [
        ["gnome-screenshot", "-f", path],
        ["scrot", "-o", path],
        ["import", "-window", "root", path],
        ["maim", path],
        ["grim", path],
    ]


def capture_with_linux_tools(timeout_s: Optional[float] = None) -> Optional[str]:
    """Try the common Linux screenshot tools in order; first success wins."""
    timeout_s = float(timeout_s or config.SCREENSHOT_TIMEOUT_S)
    fd, path = tempfile.mkstemp(prefix="cee-screenshot-", suffix=".png")
    os.close(fd)
    try:
        for argv in _linux_tool_commands(path):
            try:
                proc = subprocess.run(
                    argv,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                    timeout=timeout_s,
                    check=False,
                )
            except (OSError, subprocess.SubprocessError):
                continue
            if proc.returncode != 0 or os.path.getsize(path) <= 0:
                continue
            try:
                with Image.open(path) as img:
                    encoded = _encode_jpeg(img)
            except OSError:
                continue
            log.info("[cee] screenshot captured using %s", argv[0])
            return encoded
        return None
    finally:
        try:
            os.unlink(path)
        except OSError:
            pass


def capture_with_mss() -> Optional[str]:
    with mss.mss() as sct:
        monitors = sct.monitors
        if not monitors:
            return None
        monitor = monitors[1] if len(monitors) > 1 else monitors[0]
        shot = sct.grab(monitor)
        img = Image.frombytes("RGB", shot.size, shot.bgra, "raw", "BGRX")
    return _encode_jpeg(img)


def capture_screenshot(strategies: Iterable[CaptureFn]) -> Optional[str]:
    """Run capture strategies in order and return the first base64 JPEG produced."""
    for strategy in strategies:
        name = getattr(strategy, "__name__", "capture")
        try:
            shot = strategy()
        except Exception as error:
            log.info("[cee] %s failed: %s", name, error)
            continue
        if shot:
            return shot
    log.warning("[cee] no screenshot strategy succeeded")
    return None


def _history_lines(history: Sequence[Dict[str, Any]]) -> str:
    recent = list(history)[-HISTORY_LINES:]
    return "\n".join(f"{m.get('user', '')}: {m.get('text', '')}" for m in recent)


class CeeAgent:
    """Answer chat questions with OpenAI or Gemini, attaching a screenshot when possible."""

    def __init__(
        self,
        *,
        host_capture: Optional[CaptureFn] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.enabled = False
        self.provider = "openai"
        self.api_key = ""
        self.system_prompt = ""
        self.host_capture = host_capture
        self._http = session or requests.Session()

    def is_configured(self) -> bool:
        return bool(self.enabled and self.api_key)

    def update_settings(self, settings: Dict[str, Any]) -> None:
        """Apply the agent-related subset of chat settings."""
        if "enableCeeAgent" in settings:
            self.enabled = bool(settings["enableCeeAgent"])
        if "ceeApiProvider" in settings:
            self.provider = str(settings["ceeApiProvider"])
        if "ceeApiKey" in settings:
            self.api_key = str(settings["ceeApiKey"] or "")
        if "ceeSystemPrompt" in settings:
            self.system_prompt = str(settings["ceeSystemPrompt"] or "")

    def strategies(self) -> List[CaptureFn]:
        out: List[CaptureFn] = []
        if self.host_capture is not None:
            out.append(self.host_capture)
        if sys.platform.startswith("linux"):
            out.append(capture_with_linux_tools)
        out.append(capture_with_mss)
        return out

    def _system_prompt(self) -> str:
        if self.system_prompt:
            return f"{BASE_SYSTEM_PROMPT}\n\nAdditional instructions: {self.system_prompt}"
        return BASE_SYSTEM_PROMPT

    def process_request(self, user: str, question: str, history: Sequence[Dict[str, Any]]) -> str:
        """Blocking call; raises AgentError when no reply could be produced."""
        if not self.is_configured():
            raise AgentError("agent is not configured")
        started = time.monotonic()
        screenshot = capture_screenshot(self.strategies())
        try:
            if self.provider == "gemini":
                reply = self._call_gemini(question, screenshot, history)
            else:
                reply = self._call_openai(question, screenshot, history)
        except requests.RequestException as error:
            raise AgentError(f"{self.provider} request failed: {error}") from error
        except (KeyError, IndexError, TypeError, ValueError) as error:
            raise AgentError(f"unexpected {self.provider} response") from error
        log.info(
            "[cee] answered %s via %s in %.1fs",
            user,
            self.provider,
            time.monotonic() - started,
        )
        return reply

    def _call_openai(self, question: str, screenshot: Optional[str], history: Sequence[Dict[str, Any]]) -> str:
        messages: List[Dict[str, Any]] = [{"role": "system", "content": self._system_prompt()}]
        recent = _history_lines(history)
        if recent:
            messages.append({"role": "user", "content": f"Here's the recent chat history for context:\n{recent}"})
            messages.append({"role": "assistant", "content": "Got it, I have the chat context. What would you like to know?"})
        content: List[Dict[str, Any]] = [{"type": "text", "text": question}]
        if screenshot:
            content.append(
                {
                    "type": "image_url",
                    "image_url": {"url": f"data:image/jpeg;base64,{screenshot}", "detail": "low"},
                }
            )
        messages.append({"role": "user", "content": content})
        resp = self._http.post(
            OPENAI_URL,
            json={"model": OPENAI_MODEL, "messages": messages, "max_tokens": 150, "temperature": 0.7},
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=config.AGENT_HTTP_TIMEOUT_S,
        )
        data = resp.json()
        if isinstance(data, dict) and data.get("error"):
            raise AgentError(str(data["error"].get("message") or "OpenAI API error"))
        text = str(data["choices"][0]["message"]["content"] or "").strip()
        if not text:
            raise AgentError("empty OpenAI response")
        return text

    def _call_gemini(self, question: str, screenshot: Optional[str], history: Sequence[Dict[str, Any]]) -> str:
        prompt = self._system_prompt() + "\n\n"
        recent = _history_lines(history)
        if recent:
            prompt += f"Recent chat history for context:\n{recent}\n\n"
        prompt += f"User question: {question}"
        parts: List[Dict[str, Any]] = [{"text": prompt}]
        if screenshot:
            parts.append({"inline_data": {"mime_type": "image/jpeg", "data": screenshot}})
        resp = self._http.post(
            GEMINI_URL.format(model=GEMINI_MODEL),
            params={"key": self.api_key},
            json={
                "contents": [{"role": "user", "parts": parts}],
                "generationConfig": {"maxOutputTokens": 500, "temperature": 0.7},
            },
            timeout=config.AGENT_HTTP_TIMEOUT_S,
        )
        data = resp.json()
        if isinstance(data, dict) and data.get("error"):
            raise AgentError(str(data["error"].get("message") or "Gemini API error"))
        candidate = data["candidates"][0]
        text = "".join(str(p.get("text") or "") for p in candidate["content"]["parts"]).strip()
        if not text:
            raise AgentError("empty Gemini response")
        return text
