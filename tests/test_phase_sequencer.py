"""Tests for the two-phase sync run."""

import asyncio

import pytest

from pingtone.models import SyncHistory, UcmCluster, UcmUser
from pingtone.services.axl_client import AxlAuthError, AxlResponseError, AxlTransientError
from pingtone.services.batch_coordinator import BatchCoordinator, BatchState
from pingtone.services.entity_registry import INFRA_ENTITY_TYPES, SERVICE_ENTITY_TYPES
from pingtone.services.phase_sequencer import PhaseSequencer, SyncPhase, SyncRun
from pingtone.services.sync_history_recorder import SyncHistoryRecorder, SyncInProgressError
from pingtone.services.sync_target import SyncTargetType

USERS = [
    {"userid": "jdoe", "uuid": "{U1}"},
    {"userid": "bsmith", "uuid": "{U2}"},
    {"userid": "akim", "uuid": "{U3}"},
]


@pytest.fixture
def coordinator():
    return BatchCoordinator(concurrency=4)


@pytest.fixture
def sequencer(coordinator, session_factory, fake_client):
    return PhaseSequencer(
        coordinator,
        SyncHistoryRecorder(session_factory),
        session_factory,
        client_factory=fake_client,
        poll_interval=0.01,
        max_attempts=3,
        retry_wait_min=0,
        retry_wait_max=0,
    )


class TestSyncRun:
    """Tests for the phase state machine."""

    def test_invalid_transition(self, target):
        run = SyncRun(id="r1", target=target, history_id=1)

        with pytest.raises(RuntimeError, match="cannot move"):
            run.advance(SyncPhase.SERVICES_RUNNING)

    def test_terminal_phase_sets_finish_time(self, target):
        run = SyncRun(id="r1", target=target, history_id=1)
        run.advance(SyncPhase.FAILED)

        assert run.finished_at is not None
        with pytest.raises(RuntimeError):
            run.advance(SyncPhase.DONE)


class TestPhaseSequencer:
    """Tests for PhaseSequencer runs."""

    @pytest.mark.asyncio
    async def test_full_run(self, sequencer, coordinator, fake_client, target, db):
        fake_client.records["ucm_users"] = USERS

        run = await sequencer.start(target)
        assert run.phase == SyncPhase.INFRA_RUNNING
        await sequencer.wait(run)

        assert run.phase == SyncPhase.DONE
        assert run.error is None
        assert run.warnings == []
        infra = coordinator.status(run.infra_batch_id)
        assert infra.state == BatchState.SUCCEEDED
        assert infra.total == len(INFRA_ENTITY_TYPES)
        assert coordinator.status(run.services_batch_id).total == len(SERVICE_ENTITY_TYPES)
        assert {u.ucm_cluster_id for u in db.query(UcmUser)} == {target.cluster_id}
        assert db.query(UcmUser).count() == 3

        history = db.get(SyncHistory, run.history_id)
        assert history.status == "completed"
        assert history.outcome.value == "completed"
        db.expire_all()
        assert db.get(UcmCluster, target.cluster_id).last_sync_at == history.sync_end_time
        assert run.to_dict()["phase"] == "done"

    @pytest.mark.asyncio
    async def test_services_start_after_infra_finishes(self, sequencer, fake_client, target):
        fake_client.delays = {"locations": 0.05, "ucm_users": 0.03}

        run = await sequencer.start(target)
        await sequencer.wait(run)

        events = fake_client.events
        infra_types = set(INFRA_ENTITY_TYPES)
        last_infra_done = max(
            i for i, (event, entity_type) in enumerate(events) if event == "list_done" and entity_type in infra_types
        )
        first_services_start = min(
            i for i, (event, entity_type) in enumerate(events)
            if event == "list_start" and entity_type not in infra_types
        )
        assert last_infra_done < first_services_start

    @pytest.mark.asyncio
    async def test_start_returns_before_the_run_finishes(self, sequencer, fake_client, target):
        fake_client.delays = {"locations": 0.05}

        run = await sequencer.start(target)

        assert not run.phase.is_terminal
        assert sequencer.get_run(run.id) is run
        assert sequencer.latest_run("cluster", target.target_id) is run
        await sequencer.wait(run)

    @pytest.mark.asyncio
    async def test_rejected_credentials_fail_the_run(self, sequencer, fake_client, target, db):
        fake_client.always_fail[("get_version", None)] = AxlAuthError("Authentication failed")

        run = await sequencer.start(target)
        await sequencer.wait(run)

        assert run.phase == SyncPhase.FAILED
        assert run.error.startswith("Target unreachable")
        assert run.infra_batch_id is None
        assert fake_client.count("list") == 0
        history = db.get(SyncHistory, run.history_id)
        assert history.status == "failed"
        assert "Authentication failed" in history.error

    @pytest.mark.asyncio
    async def test_transient_preflight_failure_is_retried(self, sequencer, fake_client, target):
        fake_client.failures[("get_version", None)] = [AxlTransientError("timeout")]

        run = await sequencer.start(target)
        await sequencer.wait(run)

        assert run.phase == SyncPhase.DONE
        assert fake_client.count("get_version") == 2

    @pytest.mark.asyncio
    async def test_second_start_is_rejected(self, sequencer, fake_client, target, db):
        fake_client.delays = {"locations": 0.05}

        run = await sequencer.start(target)
        with pytest.raises(SyncInProgressError):
            await sequencer.start(target)
        await sequencer.wait(run)

        assert db.query(SyncHistory).count() == 1
        assert run.phase == SyncPhase.DONE

    @pytest.mark.asyncio
    async def test_infra_unit_failure_does_not_stop_services(self, sequencer, coordinator, fake_client, target, db):
        fake_client.always_fail[("list", "phone_models")] = AxlResponseError("Item not valid")

        run = await sequencer.start(target)
        await sequencer.wait(run)

        infra = coordinator.status(run.infra_batch_id)
        assert infra.state == BatchState.PARTIALLY_FAILED
        assert infra.succeeded == len(INFRA_ENTITY_TYPES) - 1
        assert run.services_batch_id is not None
        assert run.phase == SyncPhase.DONE
        assert len(run.warnings) == 1
        assert run.warnings[0].startswith("infra: phone_models failed")
        history = db.get(SyncHistory, run.history_id)
        assert history.status == "completed"
        assert history.outcome.value == "completed_with_errors"

    @pytest.mark.asyncio
    async def test_failed_infra_batch_still_runs_services(self, sequencer, coordinator, fake_client, target):
        for entity_type in INFRA_ENTITY_TYPES:
            fake_client.always_fail[("list", entity_type)] = AxlResponseError("boom")

        run = await sequencer.start(target)
        await sequencer.wait(run)

        assert coordinator.status(run.infra_batch_id).state == BatchState.FAILED
        assert coordinator.status(run.services_batch_id).state == BatchState.SUCCEEDED
        assert run.phase == SyncPhase.DONE
        assert len(run.warnings) == len(INFRA_ENTITY_TYPES)

    @pytest.mark.asyncio
    async def test_node_target_writes_cluster_scoped_rows(self, sequencer, fake_client, cluster, cluster_service, db):
        node = next(n for n in cluster.nodes if n.node_role == "subscriber")
        target = cluster_service.snapshot_target(db, SyncTargetType.NODE, node.id)
        fake_client.records["ucm_users"] = USERS

        run = await sequencer.start(target)
        await sequencer.wait(run)

        assert fake_client.targets[-1].hostname == "10.0.0.11"
        assert {u.ucm_cluster_id for u in db.query(UcmUser)} == {cluster.id}
        history = db.get(SyncHistory, run.history_id)
        assert (history.syncable_type, history.syncable_id) == ("node", node.id)
        db.expire_all()
        assert db.get(UcmCluster, cluster.id).last_sync_at is None

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_the_run(self, coordinator, session_factory, target, db):
        def broken_factory(target):
            raise RuntimeError("client construction failed")

        sequencer = PhaseSequencer(
            coordinator, SyncHistoryRecorder(session_factory), session_factory, client_factory=broken_factory
        )

        run = await sequencer.start(target)
        await sequencer.wait(run)

        assert run.phase == SyncPhase.FAILED
        assert run.error == "client construction failed"
        assert db.get(SyncHistory, run.history_id).status == "failed"

    @pytest.mark.asyncio
    async def test_cancelled_run_is_recorded_as_failed(self, sequencer, coordinator, fake_client, target, db):
        fake_client.delays = {"locations": 0.3}

        run = await sequencer.start(target)
        await asyncio.sleep(0.05)
        run.task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await sequencer.wait(run)

        assert run.phase == SyncPhase.FAILED
        assert db.get(SyncHistory, run.history_id).error == "Sync run was cancelled"
        assert run.services_batch_id is None
        infra = {r.entity_type: r for r in coordinator.results(run.infra_batch_id)}
        assert infra["locations"].error == "Cancelled"
        assert coordinator.status(run.infra_batch_id).state.is_terminal

    @pytest.mark.asyncio
    async def test_cancel_by_history_id(self, sequencer, fake_client, target):
        fake_client.delays = {"locations": 0.3}
        run = await sequencer.start(target)
        await asyncio.sleep(0.05)

        assert sequencer.run_for_history(run.history_id) is run
        assert sequencer.cancel(run.history_id) is run
        with pytest.raises(asyncio.CancelledError):
            await sequencer.wait(run)

        assert run.phase == SyncPhase.FAILED
        assert sequencer.cancel(run.history_id) is None
        assert sequencer.cancel(999) is None

    @pytest.mark.asyncio
    async def test_run_survives_its_history_entry_being_deleted(self, sequencer, fake_client, target, db):
        fake_client.delays = {"locations": 0.1}

        run = await sequencer.start(target)
        db.query(SyncHistory).filter(SyncHistory.id == run.history_id).delete()
        db.commit()
        await sequencer.wait(run)

        assert run.phase == SyncPhase.DONE
        assert run.error is None
        assert db.query(SyncHistory).count() == 0

    @pytest.mark.asyncio
    async def test_only_the_latest_finished_run_is_kept(self, sequencer, coordinator, target):
        first = await sequencer.start(target)
        await sequencer.wait(first)
        second = await sequencer.start(target)
        await sequencer.wait(second)

        assert sequencer.get_run(first.id) is None
        for batch_id in (first.infra_batch_id, first.services_batch_id):
            with pytest.raises(ValueError, match="Unknown batch"):
                coordinator.status(batch_id)
        assert sequencer.latest_run("cluster", target.target_id) is second
        assert coordinator.status(second.services_batch_id).state == BatchState.SUCCEEDED

    @pytest.mark.asyncio
    async def test_runs_of_other_targets_are_kept(self, sequencer, cluster, cluster_service, target, db):
        node = cluster_service.snapshot_target(db, SyncTargetType.NODE, cluster.nodes[0].id)
        cluster_run = await sequencer.start(target)
        await sequencer.wait(cluster_run)
        node_run = await sequencer.start(node)
        await sequencer.wait(node_run)

        assert sequencer.get_run(cluster_run.id) is cluster_run
        assert sequencer.get_run(node_run.id) is node_run
