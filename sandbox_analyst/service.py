# ---------------------------
# sandbox_analyst/service.py
# ---------------------------
"""
Channel-independent turn handling.

A messaging front end (webhook, chat bot, CLI) turns an inbound message into an
`Intake` and sends back `TurnOutcome.notice` plus, when present, the charts in
`TurnOutcome.result`. Everything between those two points happens here:

    resolve session → fetch external context → run analysis → update session

Turns for the same sender are serialised through the session store lock.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from .agent.loop import OrchestrationLoop
from .config import Config
from .context_fetcher import ContextFetcher, extract_urls
from .errors import AnalysisAbortedError
from .models import AgentRunResult, Message, Role
from .session_store import SessionStore

logger = logging.getLogger(__name__)

DEFAULT_INSTRUCTION = "Analyze this data and provide comprehensive insights"
UPLOAD_TURN = "Uploaded dataset"

WELCOME_NOTICE = (
    "👋 Welcome to the Data Analyst Agent!\n\n"
    "Please send me a CSV file to analyze. I can:\n\n"
    "📊 Analyze trends and patterns\n"
    "📈 Compute KPIs and statistics\n"
    "🌐 Research external context from links you share\n"
    "🖼️ Generate charts\n\n"
    "Just send your CSV to get started!"
)
APOLOGY_NOTICE = (
    "❌ Sorry, something went wrong while analyzing your data. Please try again. "
    "If the issue persists, check if your CSV format is correct."
)
PREVIEW_CHARS = 200


@dataclass
class Intake:
    sender_id: str
    instruction_text: str = ""
    dataset_bytes: Optional[bytes] = None
    prior_history: Optional[List[Message]] = None


@dataclass
class TurnOutcome:
    result: Optional[AgentRunResult]
    notice: str


def completion_notice(result: AgentRunResult) -> str:
    preview = result.narrative[:PREVIEW_CHARS]
    if len(result.narrative) > PREVIEW_CHARS:
        preview += "..."
    return f"✅ *Analysis Complete!*\n\n{preview}\n\n📊 {result.artifact_count} chart(s) attached 👇"


class AnalystService:
    """
    Wires SessionStore, ContextFetcher and OrchestrationLoop together.

    All collaborators are injectable; by default they are built from `cfg`.
    Call `start()` from inside the event loop to enable the background session
    sweep and `close()` on shutdown.
    """

    def __init__(
        self,
        cfg: Config,
        store: Optional[SessionStore] = None,
        loop: Optional[OrchestrationLoop] = None,
        fetcher: Optional[ContextFetcher] = None,
    ):
        self.cfg = cfg
        # An empty SessionStore is falsy (it defines __len__), so test identity.
        if store is None:
            store = SessionStore(ttl_s=cfg.session_ttl_s, sweep_interval_s=cfg.session_sweep_interval_s)
        self.store = store
        self.loop = loop if loop is not None else OrchestrationLoop(cfg)
        self.fetcher = fetcher if fetcher is not None else ContextFetcher(cfg, sandbox=self.loop.sandbox)

    def start(self) -> None:
        self.store.start_sweeper()

    async def close(self) -> None:
        await self.store.stop_sweeper()

    async def handle_turn(self, intake: Intake) -> TurnOutcome:
        async with self.store.locked(intake.sender_id):
            return await self._handle(intake)

    async def _handle(self, intake: Intake) -> TurnOutcome:
        sender = intake.sender_id
        session = self.store.get(sender)
        history = list(session.conversation_history) if session else []
        instruction = (intake.instruction_text or "").strip()

        if intake.dataset_bytes is not None:
            logger.info("Received dataset from %s (%d bytes)", sender, len(intake.dataset_bytes))
            dataset = intake.dataset_bytes
            self.store.update(
                sender,
                dataset=dataset,
                conversation_history=history + [Message(Role.USER, UPLOAD_TURN)],
            )
            instruction = instruction or DEFAULT_INSTRUCTION
        elif session is None or session.dataset is None:
            logger.info("No dataset for %s yet; sending welcome", sender)
            return TurnOutcome(result=None, notice=WELCOME_NOTICE)
        else:
            dataset = session.dataset
            instruction = instruction or DEFAULT_INSTRUCTION

        prior = intake.prior_history if intake.prior_history is not None else history

        try:
            context = await self.fetcher.fetch(extract_urls(instruction))
            result = await self.loop.run(dataset, instruction, prior, context or None)
        except AnalysisAbortedError as e:
            logger.error("Analysis for %s aborted: %s: %s", sender, type(e).__name__, e)
            return TurnOutcome(result=None, notice=APOLOGY_NOTICE)

        current = self.store.get(sender)
        turns = list(current.conversation_history) if current else []
        self.store.update(
            sender,
            conversation_history=turns + [
                Message(Role.USER, instruction),
                Message(Role.ASSISTANT, result.narrative),
            ],
            analysis_results={
                "round_count": result.round_count,
                "artifact_count": result.artifact_count,
                "external_context_used": bool(result.external_context),
            },
        )
        logger.info("Turn for %s complete: %d chart(s)", sender, result.artifact_count)
        return TurnOutcome(result=result, notice=completion_notice(result))
