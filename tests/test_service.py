# tests/test_service.py
from unittest.mock import AsyncMock, Mock

import pytest

from sandbox_analyst.errors import SandboxTimeoutError
from sandbox_analyst.models import AgentRunResult, Artifact, Message, Role
from sandbox_analyst.service import (
    APOLOGY_NOTICE,
    DEFAULT_INSTRUCTION,
    UPLOAD_TURN,
    WELCOME_NOTICE,
    AnalystService,
    Intake,
)
from sandbox_analyst.session_store import SessionStore

from conftest import LONG_REPORT, PNG


def make_service(cfg, run_result=None, run_error=None, context="", store=None):
    loop = Mock()
    loop.sandbox = Mock()
    loop.run = AsyncMock(return_value=run_result, side_effect=run_error)
    fetcher = Mock()
    fetcher.fetch = AsyncMock(return_value=context)
    return AnalystService(cfg, store=store if store is not None else SessionStore(), loop=loop, fetcher=fetcher)


def result(context=None):
    return AgentRunResult(
        narrative=LONG_REPORT,
        artifacts=[Artifact(data=PNG, ordinal=i, producing_round=1) for i in range(3)],
        external_context=context,
        round_count=4,
    )


@pytest.mark.asyncio
async def test_welcome_when_no_dataset(cfg):
    service = make_service(cfg)
    outcome = await service.handle_turn(Intake(sender_id="u1", instruction_text="hello"))

    assert outcome.result is None
    assert outcome.notice == WELCOME_NOTICE
    service.loop.run.assert_not_called()


@pytest.mark.asyncio
async def test_upload_runs_analysis_and_records_turns(cfg):
    service = make_service(cfg, run_result=result())
    outcome = await service.handle_turn(Intake(sender_id="u1", dataset_bytes=b"a,b\n1,2\n"))

    assert outcome.result.artifact_count == 3
    assert outcome.notice.startswith("✅ *Analysis Complete!*")
    dataset, instruction, history, context = service.loop.run.await_args.args
    assert dataset == b"a,b\n1,2\n"
    assert instruction == DEFAULT_INSTRUCTION
    assert history == []
    assert context is None

    session = service.store.get("u1")
    assert session.dataset == b"a,b\n1,2\n"
    assert [(m.role, m.content) for m in session.conversation_history] == [
        (Role.USER, UPLOAD_TURN),
        (Role.USER, DEFAULT_INSTRUCTION),
        (Role.ASSISTANT, LONG_REPORT),
    ]
    assert session.analysis_results == {"round_count": 4, "artifact_count": 3, "external_context_used": False}


@pytest.mark.asyncio
async def test_follow_up_reuses_stored_dataset_and_history(cfg):
    service = make_service(cfg, run_result=result())
    service.store.update("u1", dataset=b"csv", conversation_history=[Message(Role.ASSISTANT, "first report")])

    await service.handle_turn(Intake(sender_id="u1", instruction_text="  Now by month  "))

    dataset, instruction, history, _ = service.loop.run.await_args.args
    assert dataset == b"csv"
    assert instruction == "Now by month"
    assert [m.content for m in history] == ["first report"]


@pytest.mark.asyncio
async def test_urls_in_instruction_feed_external_context(cfg):
    service = make_service(cfg, run_result=result(context="ctx"), context="ctx")
    await service.handle_turn(Intake(sender_id="u1", instruction_text="see https://example.com/kpi.", dataset_bytes=b"x"))

    service.fetcher.fetch.assert_awaited_once_with(["https://example.com/kpi"])
    assert service.loop.run.await_args.args[3] == "ctx"
    assert service.store.get("u1").analysis_results["external_context_used"] is True


@pytest.mark.asyncio
async def test_prior_history_overrides_session_history(cfg):
    service = make_service(cfg, run_result=result())
    service.store.update("u1", dataset=b"csv", conversation_history=[Message(Role.USER, "stored")])
    supplied = [Message(Role.USER, "from channel")]

    await service.handle_turn(Intake(sender_id="u1", instruction_text="go", prior_history=supplied))
    assert service.loop.run.await_args.args[2] == supplied


@pytest.mark.asyncio
async def test_fatal_error_maps_to_apology_and_keeps_session(cfg):
    service = make_service(cfg, run_error=SandboxTimeoutError("timed out"))
    outcome = await service.handle_turn(Intake(sender_id="u1", dataset_bytes=b"csv"))

    assert outcome.result is None
    assert outcome.notice == APOLOGY_NOTICE
    session = service.store.get("u1")
    assert session.dataset == b"csv"
    assert [m.content for m in session.conversation_history] == [UPLOAD_TURN]
    assert session.analysis_results is None


@pytest.mark.asyncio
async def test_injected_empty_store_is_used(cfg):
    store = SessionStore()
    service = make_service(cfg, run_result=result(), store=store)
    assert service.store is store

    await service.handle_turn(Intake(sender_id="u1", dataset_bytes=b"csv"))
    assert store.get("u1").dataset == b"csv"


@pytest.mark.asyncio
async def test_welcome_only_senders_leave_no_locks_behind(cfg):
    service = make_service(cfg)
    for i in range(100):
        outcome = await service.handle_turn(Intake(sender_id=f"u{i}", instruction_text="hi"))
        assert outcome.notice == WELCOME_NOTICE

    service.store.sweep()
    assert len(service.store) == 0
    assert service.store._locks == {}
