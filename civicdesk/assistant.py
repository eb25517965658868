# Generative assistant: OpenAI relay, citizen context and safe reply rendering

import asyncio
import html
import json
import logging
import re
from typing import Any, Dict, Iterable, List, Optional

import openai as openai_mod

from . import config
from .auth import Session
from .errors import AssistantUnavailable
from .models import ChatHistoryEntry, ComplaintStatus, complaint_status

logger = logging.getLogger(__name__)

DEGRADED_REPLY = ("Sorry, I'm having trouble connecting to the AI service. "
                  "Please try again later.")
RELAY_FAILED = "AI service failed"
RECENT_IN_CONTEXT = 3

SYSTEM_PROMPT = (
    "You are the help assistant of a city's civic complaint portal. Citizens use the portal to report "
    "road damage, water supply, streetlight, garbage, noise and drainage problems and to follow their "
    "complaints through pending, in-progress, resolved or rejected.\n"
    "RESPONSE RULES:\n"
    "- Keep responses under 120 words. Be concise and direct.\n"
    "- Use **bold** for key terms and bullet points for steps.\n"
    "- When a citizen context is supplied, use it to answer questions about their complaints. "
    "Never invent complaints that are not in the context."
)


async def openai_chat(client, messages: list, model: str = config.OPENAI_MODEL,
                      max_retries: int = 3) -> Optional[str]:
    for attempt in range(max_retries):
        try:
            resp = await client.chat.completions.create(model=model, messages=messages)
            return (resp.choices[0].message.content or "").strip()
        except (openai_mod.RateLimitError, openai_mod.APIConnectionError) as e:
            logger.warning("OpenAI retry %d: %s", attempt + 1, e)
            if attempt == max_retries - 1:
                raise
            await asyncio.sleep(2 ** attempt)
        except Exception as e:
            logger.error("OpenAI error: %s", e)
            return None
    return None


class AssistantClient:
    def __init__(self, client, model: str = config.OPENAI_MODEL):
        self._client = client
        self.model = model

    async def reply(self, message: str, context: Optional[Dict[str, Any]] = None) -> str:
        """Send one citizen message (plus optional context) and return the raw reply text."""
        messages = [{"role": "system", "content": SYSTEM_PROMPT}]
        if context:
            messages.append({"role": "system",
                             "content": "Citizen context:\n" + json.dumps(context, default=str)})
        messages.append({"role": "user", "content": message})
        try:
            text = await openai_chat(self._client, messages, model=self.model)
        except (openai_mod.RateLimitError, openai_mod.APIConnectionError) as e:
            raise AssistantUnavailable(RELAY_FAILED) from e
        if not text:
            raise AssistantUnavailable(RELAY_FAILED)
        return text


def build_assistant_context(session: Session, complaints: Iterable[Dict[str, Any]],
                            user_name: Optional[str] = None) -> Dict[str, Any]:
    """Summarise a citizen's complaints (newest first) for the assistant.

    Anything not resolved or in progress counts as pending here.
    """
    complaints = list(complaints)
    pending = in_progress = resolved = 0
    for doc in complaints:
        status = complaint_status(doc)
        if status == ComplaintStatus.RESOLVED.value:
            resolved += 1
        elif status == ComplaintStatus.IN_PROGRESS.value:
            in_progress += 1
        else:
            pending += 1
    return {
        "userName": user_name or session.display_name,
        "totalComplaints": len(complaints),
        "pendingComplaints": pending,
        "inProgressComplaints": in_progress,
        "resolvedComplaints": resolved,
        "recentComplaints": [
            {"title": c.get("title"), "status": c.get("status"), "category": c.get("category")}
            for c in complaints[:RECENT_IN_CONTEXT]
        ],
    }

# ---------------------------------------------------------------------------
# Reply rendering
# ---------------------------------------------------------------------------
_BOLD = re.compile(r"\*\*(.*?)\*\*")
_ITALIC = re.compile(r"\*(.*?)\*")
_BULLET = re.compile(r"^[-•]\s+(.+)$")


def format_reply(text: str) -> str:
    """Render assistant text as safe HTML.

    The text is escaped first, so only the markup added here survives:
    **bold**, *italic*, line breaks and ``-``/``•`` bullet lists.
    """
    formatted = html.escape(text or "", quote=False)
    formatted = _BOLD.sub(r"<strong>\1</strong>", formatted)
    formatted = _ITALIC.sub(r"<em>\1</em>", formatted)

    out, items = [], []
    for line in formatted.split("\n"):
        m = _BULLET.match(line)
        if m:
            items.append(f"<li>{m.group(1)}</li>")
            continue
        if items:
            out.append("<ul>" + "".join(items) + "</ul>")
            items = []
        out.append(line)
    if items:
        out.append("<ul>" + "".join(items) + "</ul>")
    return "<br>".join(out)


def history_entries(docs: List[Dict[str, Any]]) -> List[ChatHistoryEntry]:
    """Expand stored exchanges into alternating user/assistant messages."""
    entries = []
    for doc in docs:
        ts = doc.get("timestamp")
        entries.append(ChatHistoryEntry(role="user", content=doc.get("userMessage", ""), timestamp=ts))
        entries.append(ChatHistoryEntry(role="assistant", content=doc.get("aiResponse", ""), timestamp=ts))
    return entries
