# ---------------------------
# sandbox_analyst/context_fetcher.py
# ---------------------------
"""
Best-effort web research for URLs the user mentions in an instruction.

A dedicated research-bridge container (an MCP server in front of the search
provider) is started for each fetch, exposed to the completion service as a
remote MCP tool, and removed afterwards. The OpenAI servers call the bridge
directly, so in HOST mode RESEARCH_BRIDGE_PUBLIC_URL must point at something
they can reach (e.g. a tunnel to the host).

Nothing here is allowed to fail a turn: every error collapses to "".
"""

import logging
import re
import secrets
from typing import List, Optional, Sequence
from urllib.parse import urlparse

from langchain_core.messages import HumanMessage

from .agent.prompt import research_prompt
from .config import Config
from .responses import extract_text
from .sandbox.client import SandboxClient

logger = logging.getLogger(__name__)

_URL_RE = re.compile(r"https?://[^\s<>\"']+", re.IGNORECASE)
_TRAILING = ".,;:!?)]}'\""

BRIDGE_PORT = 8080
BRIDGE_PATH = "/mcp"
BRIDGE_LABEL = "research-bridge"


def extract_urls(text: Optional[str]) -> List[str]:
    """Well-formed http(s) URLs in order of first appearance, without duplicates."""
    if not text:
        return []
    seen, urls = set(), []
    for match in _URL_RE.findall(text):
        url = match.rstrip(_TRAILING)
        parsed = urlparse(url)
        if parsed.scheme.lower() not in ("http", "https") or not parsed.netloc:
            continue
        if url not in seen:
            seen.add(url)
            urls.append(url)
    return urls


class ContextFetcher:
    def __init__(self, cfg: Config, sandbox: Optional[SandboxClient] = None, chat_model=None):
        self.cfg = cfg
        self.sandbox = sandbox or SandboxClient(cfg)
        self._chat_model = chat_model

    def _model(self):
        if self._chat_model is None:
            from langchain_openai import ChatOpenAI

            self._chat_model = ChatOpenAI(
                model=self.cfg.research_model,
                api_key=self.cfg.openai_api_key,
                use_responses_api=True,
                max_retries=self.cfg.completion_max_retries,
                timeout=self.cfg.completion_timeout_s,
            )
        return self._chat_model

    async def fetch(self, urls: Sequence[str], credential: Optional[str] = None) -> str:
        """
        Summarise `urls` into a block of external context.

        Returns "" when there are no URLs, no search credential, or anything
        goes wrong along the way (bridge start, research call, empty answer).
        """
        if not urls:
            logger.debug("No URLs detected; skipping external context")
            return ""
        credential = credential if credential is not None else self.cfg.exa_api_key
        if not credential:
            logger.warning("EXA_API_KEY missing; skipping external context")
            return ""

        logger.info("Fetching external context for %d URL(s)", len(urls))
        token = secrets.token_urlsafe(24)
        handle = None
        try:
            handle = await self.sandbox.create(
                image=self.cfg.research_bridge_image,
                token=token,
                environment={"EXA_API_KEY": credential},
                service_port=BRIDGE_PORT,
                health_path=None,
            )
            bridge = {
                "type": "mcp",
                "server_label": BRIDGE_LABEL,
                "server_url": self.sandbox.service_url(handle, BRIDGE_PATH),
                "headers": {"Authorization": f"Bearer {token}"},
                "require_approval": "never",
            }
            model = self._model().bind_tools([bridge])
            response = await model.ainvoke([HumanMessage(content=research_prompt(urls))])
            text = extract_text(response)
        except Exception as e:
            logger.warning("External context fetch failed: %s", e)
            return ""
        finally:
            if handle is not None:
                await self.sandbox.destroy(handle)

        if not text:
            logger.warning("Research returned no text; continuing without external context")
        else:
            logger.info("External context: %d chars", len(text))
        return text
