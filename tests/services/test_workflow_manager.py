import random
from unittest.mock import AsyncMock, patch

import pytest

from engine.errors import ConcurrentModificationError, InputValidationError, PersistenceFailure
from models.workflow import STAGE_ORDER, WorkflowStage
from services.workflow_manager import WorkflowManager, next_stage_after
from services.workflow_store import InMemoryWorkflowStore

ACME = "Acme"


@pytest.fixture
def store():
    return InMemoryWorkflowStore()


@pytest.fixture
def manager(store):
    return WorkflowManager(store, write_attempts=3)


@pytest.fixture(autouse=True)
def no_backoff_sleep():
    with patch("asyncio.sleep", AsyncMock()):
        yield


@pytest.mark.asyncio
async def test_progress_without_state(manager):
    progress = await manager.get_progress("p-1")

    assert progress.current_stage == WorkflowStage.DASHBOARD
    assert progress.completed_stages == []
    assert progress.progress_percent == 0
    assert progress.next_stage == WorkflowStage.DATA_EXTRACTION


@pytest.mark.asyncio
async def test_first_advance_creates_state(manager):
    state = await manager.advance("p-1", "dashboard", company_name="Acme")

    assert state.company_name == "Acme"
    assert state.current_stage == WorkflowStage.DASHBOARD
    assert state.completed_stages == []
    assert "started" in state.timestamps
    assert "dashboard" in state.timestamps
    assert state.version == 1


@pytest.mark.asyncio
async def test_repeated_dashboard_advance_completes_nothing(manager):
    first = await manager.advance("p-1", "dashboard", company_name=ACME)
    second = await manager.advance("p-1", "dashboard", company_name=ACME)

    assert second.completed_stages == []
    assert second.timestamps["started"] == first.timestamps["started"]
    assert second.version == first.version + 1


@pytest.mark.asyncio
async def test_advancing_completes_previous_stage(manager):
    await manager.advance("p-1", "dashboard", company_name=ACME)
    state = await manager.advance("p-1", "data-extraction", payload={"revenue": 1_000_000}, company_name=ACME)

    assert state.completed_stages == [WorkflowStage.DASHBOARD]
    assert state.current_stage == WorkflowStage.DATA_EXTRACTION
    assert state.stage_payloads["data-extraction"] == {"revenue": 1_000_000}


@pytest.mark.asyncio
async def test_all_stages_in_order_reach_full_progress(manager):
    for stage in STAGE_ORDER:
        await manager.advance("p-1", stage.value, company_name=ACME)

    progress = await manager.get_progress("p-1")

    assert progress.progress_percent == 100
    assert progress.next_stage is None
    assert progress.completed_stages == STAGE_ORDER


@pytest.mark.asyncio
async def test_progress_rounds(manager):
    await manager.advance("p-1", "dashboard", company_name=ACME)
    await manager.advance("p-1", "data-extraction", company_name=ACME)

    progress = await manager.get_progress("p-1")

    # 1 of 6 stages
    assert progress.progress_percent == 17
    assert progress.next_stage == WorkflowStage.CALL_TRANSCRIPTS


@pytest.mark.asyncio
async def test_reentering_earlier_stage_keeps_later_completions(manager):
    for stage in ["dashboard", "data-extraction", "call-transcripts", "financial-analysis"]:
        await manager.advance("p-1", stage, company_name=ACME)

    state = await manager.advance("p-1", "data-extraction", company_name=ACME)

    assert state.current_stage == WorkflowStage.DATA_EXTRACTION
    assert state.completed_stages == [
        WorkflowStage.DASHBOARD,
        WorkflowStage.DATA_EXTRACTION,
        WorkflowStage.CALL_TRANSCRIPTS,
        WorkflowStage.FINANCIAL_ANALYSIS,
    ]


@pytest.mark.asyncio
async def test_payload_overwrites_previous(manager):
    await manager.advance("p-1", "financial-analysis", payload={"health_score": 40}, company_name=ACME)
    state = await manager.advance("p-1", "financial-analysis", payload={"health_score": 67}, company_name=ACME)

    assert state.stage_payloads["financial-analysis"] == {"health_score": 67}


@pytest.mark.asyncio
async def test_unknown_stage_rejected(manager, store):
    with pytest.raises(InputValidationError, match="Unknown workflow stage"):
        await manager.advance("p-1", "closing")

    assert await store.get("p-1") is None


@pytest.mark.asyncio
async def test_reset_then_advance_recreates(manager):
    await manager.advance("p-1", "dashboard", company_name=ACME)
    await manager.advance("p-1", "data-extraction", company_name=ACME)

    await manager.reset("p-1")
    assert await manager.get_state("p-1") is None

    state = await manager.advance("p-1", "dashboard", company_name=ACME)
    assert state.completed_stages == []
    assert state.version == 1


@pytest.mark.asyncio
async def test_conflicting_write_is_reapplied(store, manager):
    await manager.advance("p-1", "dashboard", company_name=ACME)
    original_put = store.put
    calls = {"count": 0}

    async def put_with_interleaved_writer(prospect_id, state, expected_version):
        calls["count"] += 1
        if calls["count"] == 1:
            # Another writer lands between our read and write
            current = await store.get(prospect_id)
            await original_put(prospect_id, current, current.version)
        return await original_put(prospect_id, state, expected_version)

    store.put = put_with_interleaved_writer

    state = await manager.advance("p-1", "data-extraction", company_name=ACME)

    assert calls["count"] == 2
    assert state.completed_stages == [WorkflowStage.DASHBOARD]
    assert state.version == 3


@pytest.mark.asyncio
async def test_persistent_conflict_becomes_persistence_failure(store):
    store.put = AsyncMock(side_effect=ConcurrentModificationError("p-1", 0))
    manager = WorkflowManager(store, write_attempts=2)

    with pytest.raises(PersistenceFailure):
        await manager.advance("p-1", "dashboard", company_name=ACME)

    assert store.put.await_count == 2


@pytest.mark.asyncio
async def test_store_failure_propagates(store, manager):
    store.get = AsyncMock(side_effect=PersistenceFailure("unreachable"))

    with pytest.raises(PersistenceFailure, match="unreachable"):
        await manager.advance("p-1", "dashboard", company_name=ACME)


@pytest.mark.asyncio
@pytest.mark.parametrize("seed", range(10))
async def test_completed_stages_grow_monotonically_without_duplicates(manager, seed):
    rng = random.Random(seed)
    previous = 0

    for _ in range(30):
        state = await manager.advance("p-1", rng.choice(STAGE_ORDER).value, company_name=ACME)

        assert len(state.completed_stages) >= previous
        assert len(state.completed_stages) == len(set(state.completed_stages))
        previous = len(state.completed_stages)


def test_next_stage_after_last_is_none():
    assert next_stage_after(WorkflowStage.AUDIT_DECK) is None
    assert next_stage_after(WorkflowStage.DASHBOARD) == WorkflowStage.DATA_EXTRACTION


@pytest.mark.asyncio
@pytest.mark.parametrize("company_name", [None, "  "])
async def test_first_advance_requires_company_name(manager, store, company_name):
    with pytest.raises(InputValidationError, match="company_name"):
        await manager.advance("p-1", "dashboard", company_name=company_name)

    assert await store.get("p-1") is None


@pytest.mark.asyncio
async def test_later_advances_keep_company_name(manager):
    await manager.advance("p-1", "dashboard", company_name=ACME)

    state = await manager.advance("p-1", "data-extraction")

    assert state.company_name == ACME


# ------------TRANSCRIPT HISTORY------------


@pytest.mark.asyncio
async def test_record_transcript_appends_and_moves_to_call_transcripts(manager):
    await manager.advance("p-1", "dashboard", company_name=ACME)
    await manager.advance("p-1", "data-extraction")

    await manager.record_transcript("p-1", {"text": "First discovery call", "call_type": "discovery"})
    state = await manager.record_transcript("p-1", {"text": "Follow-up call"})

    assert state.current_stage == WorkflowStage.CALL_TRANSCRIPTS
    assert state.completed_stages == [WorkflowStage.DASHBOARD, WorkflowStage.DATA_EXTRACTION]
    assert [entry["text"] for entry in state.transcripts] == ["First discovery call", "Follow-up call"]
    assert all("timestamp" in entry for entry in state.transcripts)
    assert state.transcripts[0]["call_type"] == "discovery"
    assert state.stage_payloads["call-transcripts"] == state.transcripts


@pytest.mark.asyncio
async def test_record_transcript_starts_workflow(manager):
    state = await manager.record_transcript("p-1", {"text": "Cold call notes"}, company_name=ACME)

    assert state.company_name == ACME
    assert state.completed_stages == [WorkflowStage.DASHBOARD]
    assert len(state.transcripts) == 1


@pytest.mark.asyncio
async def test_record_transcript_validation(manager, store):
    with pytest.raises(InputValidationError):
        await manager.record_transcript("p-1", {})
    with pytest.raises(InputValidationError, match="company_name"):
        await manager.record_transcript("p-1", {"text": "notes"})

    assert await store.get("p-1") is None


@pytest.mark.asyncio
async def test_get_transcripts(manager):
    assert await manager.get_transcripts("p-1") == []

    await manager.record_transcript("p-1", {"text": "notes"}, company_name=ACME)

    transcripts = await manager.get_transcripts("p-1")
    assert len(transcripts) == 1
    assert transcripts[0]["text"] == "notes"


@pytest.mark.asyncio
async def test_advancing_keeps_transcript_history(manager):
    await manager.record_transcript("p-1", {"text": "notes"}, company_name=ACME)

    await manager.advance("p-1", "financial-analysis", payload={"health_score": 67})

    assert len(await manager.get_transcripts("p-1")) == 1


@pytest.mark.asyncio
async def test_reset_clears_transcript_history(manager):
    await manager.record_transcript("p-1", {"text": "notes"}, company_name=ACME)

    await manager.reset("p-1")

    assert await manager.get_transcripts("p-1") == []
    state = await manager.record_transcript("p-1", {"text": "fresh start"}, company_name=ACME)
    assert [entry["text"] for entry in state.transcripts] == ["fresh start"]


@pytest.mark.asyncio
async def test_concurrent_transcript_appends_are_not_lost(store, manager):
    await manager.record_transcript("p-1", {"text": "first"}, company_name=ACME)
    original_put = store.put
    calls = {"count": 0}

    async def put_with_interleaved_append(prospect_id, state, expected_version):
        calls["count"] += 1
        if calls["count"] == 1:
            current = await store.get(prospect_id)
            current.transcripts.append({"text": "other writer"})
            await original_put(prospect_id, current, current.version)
        return await original_put(prospect_id, state, expected_version)

    store.put = put_with_interleaved_append

    state = await manager.record_transcript("p-1", {"text": "second"})

    assert [entry["text"] for entry in state.transcripts] == ["first", "other writer", "second"]
