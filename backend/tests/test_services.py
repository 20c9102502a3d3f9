"""Tests for the SQL stores and the database-backed schedule run."""

import asyncio
import json
import threading
from datetime import datetime, timedelta, timezone

import pytest

from db.models import Agent as AgentRow
from db.models import AgentRecord
from db.models import Schedule as ScheduleRow
from db.models import ScheduleStep as ScheduleStepRow
from engine.models import ScheduleQuery
from services.agent_service import AgentService
from services.execution_service import ExecutionService
from services.record_service import RecordService
from services.schedule_service import ScheduleService
from worker.run_schedule import run_due_schedules_async, run_schedule_async

from tests.fakes import FakeTokenRefresher


async def _add_schedule(session_factory, agent_id="agent-x", **kwargs):
    async with session_factory() as db:
        schedule = ScheduleRow(agent_id=agent_id, **kwargs)
        db.add(schedule)
        await db.commit()
        return schedule.id


@pytest.mark.integration
class TestRecordService:

    async def test_create_and_find_by_model(self, session_factory):
        svc = RecordService(session_factory)
        first = await svc.create("model-lead", {"name": "Ada"})
        await svc.create("model-lead", {"name": "Grace"})
        await svc.create("model-post", {"title": "Hello"})

        records = await svc.find_all_by_model("model-lead")

        assert {r.data["name"] for r in records} == {"Ada", "Grace"}
        assert all(r.model_id == "model-lead" and r.is_alive for r in records)
        assert (await svc.get_record(first.id)).data == {"name": "Ada"}

    async def test_soft_deleted_records_are_hidden(self, session_factory):
        svc = RecordService(session_factory)
        kept = await svc.create("model-lead", {"name": "Ada"})
        gone = await svc.create("model-lead", {"name": "Grace"})

        async with session_factory() as db:
            (await db.get(AgentRecord, gone.id)).soft_delete()
            await db.commit()

        assert [r.id for r in await svc.find_all_by_model("model-lead")] == [kept.id]
        assert await svc.get_record(gone.id) is None
        assert (await svc.get_by_id(gone.id, include_deleted=True)).deleted_at is not None

    async def test_update_overwrites_data(self, session_factory):
        svc = RecordService(session_factory)
        record = await svc.create("model-lead", {"name": "Ada", "summary": ""})

        updated = await svc.update(record.id, {"name": "Ada", "summary": "Pioneer"})

        assert updated.data == {"name": "Ada", "summary": "Pioneer"}
        assert (await svc.get_record(record.id)).data["summary"] == "Pioneer"

    async def test_update_missing_record_returns_none(self, session_factory):
        assert await RecordService(session_factory).update("nope", {"a": 1}) is None


@pytest.mark.integration
class TestExecutionService:

    async def test_lifecycle_timestamps(self, session_factory):
        svc = ExecutionService(session_factory)
        execution_id = await svc.create("rec-1", "action-1", "pending", schedule_id="sched-1")

        await svc.update(execution_id, "running")
        running = await svc.get_by_id(execution_id)
        assert running.status == "running"
        assert running.started_at is not None
        assert running.completed_at is None

        await svc.update(
            execution_id, "completed", result={"finalData": {"a": 1}},
            total_tokens=15, input_tokens=10, output_tokens=5, execution_time_ms=42,
        )
        done = await svc.get_by_id(execution_id)
        assert done.status == "completed"
        assert done.completed_at is not None
        assert done.result == {"finalData": {"a": 1}}
        assert (done.total_tokens, done.input_tokens, done.output_tokens) == (15, 10, 5)
        assert done.execution_time_ms == 42
        assert done.schedule_id == "sched-1"

    async def test_failed_execution_keeps_error(self, session_factory):
        svc = ExecutionService(session_factory)
        execution_id = await svc.create("rec-1", "action-1", "pending")
        await svc.update(execution_id, "failed", error="Connection required")

        (row,) = await svc.list_for_record("rec-1")
        assert row.status == "failed"
        assert row.error == "Connection required"


@pytest.mark.integration
class TestScheduleService:

    async def test_get_schedule_orders_steps_and_parses_queries(self, session_factory):
        schedule_id = await _add_schedule(session_factory, name="Weekly", mode="recurring", interval_hours=168)
        async with session_factory() as db:
            db.add_all([
                ScheduleStepRow(schedule_id=schedule_id, order=2, model_id="m", action_id="a2", query="acme"),
                ScheduleStepRow(
                    schedule_id=schedule_id, order=1, model_id="m", action_id="a1",
                    query={"filters": [{"field": "status", "operator": "equals", "value": "new"}], "logic": "and"},
                ),
                ScheduleStepRow(schedule_id=schedule_id, order=3, model_id="m", action_id="a3", is_deleted=True),
            ])
            await db.commit()

        schedule = await ScheduleService(session_factory).get_schedule(schedule_id)

        assert schedule.name == "Weekly"
        assert schedule.interval_hours == 168
        assert [s.action_id for s in schedule.sorted_steps()] == ["a1", "a2"]
        first, second = schedule.sorted_steps()
        assert isinstance(first.query, ScheduleQuery)
        assert first.query.logic == "AND"
        assert second.query == "acme"

    async def test_missing_schedule(self, session_factory):
        assert await ScheduleService(session_factory).get_schedule("nope") is None

    async def test_bookkeeping_updates(self, session_factory):
        schedule_id = await _add_schedule(session_factory, mode="once")
        svc = ScheduleService(session_factory)
        when = datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc)

        await svc.update_last_run(schedule_id, when)
        await svc.update(schedule_id, next_run_at=when + timedelta(hours=24), status="paused")

        schedule = await svc.get_schedule(schedule_id)
        assert schedule.last_run_at == when
        assert schedule.next_run_at == when + timedelta(hours=24)
        assert schedule.status == "paused"

    async def test_update_without_status_keeps_it(self, session_factory):
        schedule_id = await _add_schedule(session_factory, mode="recurring")
        svc = ScheduleService(session_factory)

        await svc.update(schedule_id, next_run_at=datetime.now(timezone.utc))

        assert (await svc.get_schedule(schedule_id)).status == "active"

    async def test_list_due(self, session_factory):
        now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        never_ran = await _add_schedule(session_factory, mode="recurring", interval_hours=24)
        overdue = await _add_schedule(
            session_factory, mode="recurring", interval_hours=24, last_run_at=now - timedelta(hours=25),
        )
        await _add_schedule(session_factory, mode="recurring", interval_hours=24, last_run_at=now - timedelta(hours=1))
        await _add_schedule(session_factory, mode="once")
        await _add_schedule(session_factory, mode="recurring", status="paused")
        await _add_schedule(session_factory, mode="recurring", is_deleted=True)

        due = await ScheduleService(session_factory).list_due(now=now)

        assert {s.id for s in due} == {never_ran, overdue}


@pytest.mark.integration
class TestScheduleRunFromDatabase:

    @pytest.fixture
    def post_writer(self, generator):
        def respond(prompt, schema):
            if "posts" in schema["properties"]:
                return {"posts": [
                    {"title": "Intro", "content": "Hello"},
                    {"title": "Follow up", "content": "Checking in"},
                ]}
            return {name: f"generated {name}" for name in schema["properties"]}

        generator.responder = respond
        return generator

    async def test_seed_is_idempotent(self, session_factory):
        from scripts.seed import seed

        first = await seed(session_factory=session_factory, create_tables=False)
        second = await seed(session_factory=session_factory, create_tables=False)

        assert first == second
        agent = await AgentService(session_factory).get_agent(first["agent_id"])
        assert agent.name == "Demo Outreach Agent"
        assert [a.id for a in agent.actions] == ["action-research", "action-posts"]
        assert len(await RecordService(session_factory).find_all_by_model("model-lead")) == 3

    async def test_run_seeded_schedule(self, session_factory, registry, post_writer):
        from scripts.seed import seed

        ids = await seed(session_factory=session_factory, create_tables=False)
        events = []

        summary = await run_schedule_async(
            ids["schedule_id"],
            on_event=events.append,
            session_factory=session_factory,
            registry=registry,
            token_refresher=FakeTokenRefresher(),
        )

        assert summary["status"] == "completed"
        assert (summary["stepsCompleted"], summary["stepsFailed"]) == (2, 0)
        assert (summary["recordsProcessed"], summary["recordsFailed"]) == (6, 0)
        assert events[0].type == "start" and events[-1].type == "complete"

        records = RecordService(session_factory)
        leads = await records.find_all_by_model("model-lead")
        posts = await records.find_all_by_model("model-post")
        assert len(posts) == 6
        for lead in leads:
            assert lead.data["company_info"] == "generated company_info"
            assert lead.data["summary"] == "generated summary"
            assert len(lead.data["posts"]) == 2
        assert {p.data["lead"] for p in posts} == {lead.id for lead in leads}

        executions = await ExecutionService(session_factory).list_for_record(leads[0].id)
        assert [e.status for e in executions] == ["completed", "completed"]

        schedule = await ScheduleService(session_factory).get_schedule(ids["schedule_id"])
        assert schedule.status == "active"
        assert schedule.next_run_at - schedule.last_run_at == timedelta(hours=24)

    async def test_second_run_skips_finished_leads(self, session_factory, registry, post_writer):
        from scripts.seed import seed

        ids = await seed(session_factory=session_factory, create_tables=False)
        kwargs = dict(session_factory=session_factory, registry=registry, token_refresher=FakeTokenRefresher())
        await run_schedule_async(ids["schedule_id"], **kwargs)

        summary = await run_schedule_async(ids["schedule_id"], **kwargs)

        assert summary["status"] == "completed"
        assert summary["recordsProcessed"] == 0

    async def test_unknown_schedule(self, session_factory):
        summary = await run_schedule_async("nope", session_factory=session_factory)
        assert summary["status"] == "not_found"
        assert summary["error"] == "Schedule with ID nope not found"

    async def test_unknown_agent(self, session_factory):
        schedule_id = await _add_schedule(session_factory, agent_id="ghost")
        summary = await run_schedule_async(schedule_id, session_factory=session_factory)
        assert summary["status"] == "not_found"
        assert summary["error"] == "Agent with ID ghost not found"

    async def test_run_due_schedules(self, session_factory, registry, post_writer):
        from scripts.seed import seed

        ids = await seed(session_factory=session_factory, create_tables=False)

        result = await run_due_schedules_async(
            session_factory=session_factory, registry=registry, token_refresher=FakeTokenRefresher(),
        )

        assert result["dispatched"] == 1
        assert result["errors"] == 0
        assert result["results"][0]["scheduleId"] == ids["schedule_id"]
        assert await ScheduleService(session_factory).list_due() == []


@pytest.mark.integration
class TestCli:

    @pytest.fixture(autouse=True)
    def restore_logging(self):
        import logging

        import structlog

        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        root.handlers[:] = handlers
        root.setLevel(level)
        structlog.reset_defaults()

    async def test_unknown_schedule_exits_nonzero(self, capsys):
        from worker.run_schedule import _main

        code = await _main(["nope"])

        assert code == 1
        summary = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
        assert summary["status"] == "not_found"

    async def test_due_with_nothing_due(self, capsys):
        from worker.run_schedule import _main

        assert await _main(["--due"]) == 0
        assert json.loads(capsys.readouterr().out.strip()) == {"dispatched": 0, "errors": 0, "results": []}


@pytest.mark.unit
class TestRunScheduleSync:

    def test_runs_on_its_own_loop_in_a_thread(self, monkeypatch):
        import worker.run_schedule as worker

        loops = []

        async def fake_run(schedule_id, **kwargs):
            loops.append(asyncio.get_running_loop())
            await asyncio.sleep(0)
            return {"scheduleId": schedule_id, "status": "completed", "timeout": kwargs.get("timeout_seconds")}

        monkeypatch.setattr(worker, "run_schedule_async", fake_run)
        outcome = {}

        def target():
            outcome["summary"] = worker.run_schedule_sync("sched-1", timeout_seconds=5)
            try:
                outcome["current"] = asyncio.get_event_loop()
            except RuntimeError:
                outcome["current"] = None

        thread = threading.Thread(target=target)
        thread.start()
        thread.join(timeout=10)

        assert outcome["summary"] == {"scheduleId": "sched-1", "status": "completed", "timeout": 5}
        assert loops[0].is_closed()
        assert outcome["current"] is None
