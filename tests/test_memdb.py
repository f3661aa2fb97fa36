import random
from datetime import timedelta

import pytest

from gpupool.memdb import MemoryStorage, calculate_percentiles, open_storage
from gpupool.types import (
    Agent,
    AgentUpdate,
    Gpu,
    GpuMetrics,
    GpuRequirements,
    NotFoundError,
    Percentile,
    Permission,
    QueuedSession,
    Session,
    SessionGpu,
    SessionRequirements,
    SessionUpdate,
)

GIB = 1024 * 1024 * 1024


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def default_agent(gpu_vram):
    return Agent(
        state="active",
        hostname="Test",
        address="127.0.0.1:43210",
        version="Test",
        gpus=[Gpu(index=0, name="Test", vendor_id=1, device_id=2, sub_device_id=3, vram=gpu_vram)],
        labels={"Key1": "Value1", "Key2": "Value2"},
        taints={},
        sessions=[],
        pool_id="TestPool",
    )


def default_session_requirements(gpu_vram):
    return SessionRequirements(
        version="Test",
        gpus=[GpuRequirements(vram_required=gpu_vram)],
        match_labels={},
        tolerates={},
    )


def create_session_requirements(rng):
    return SessionRequirements(
        version="Test",
        gpus=[
            GpuRequirements(vram_required=rng.randint(0, 8192) * 1024 * 1024)
            for _ in range(rng.randint(1, 7))
        ],
    )


def register_agent(db, agent):
    agent.id = db.register_agent(agent)
    assert db.get_agent_by_id(agent.id) == agent
    return agent


@pytest.fixture
def db():
    with open_storage() as storage:
        yield storage


def test_agents(db):
    agent = register_agent(db, default_agent(24 * GIB))

    agent.state = "missing"
    db.set_agents_missing_if_not_updated_for(timedelta(0))
    assert db.get_agent_by_id(agent.id) == agent

    agent.state = "active"
    db.update_agent(AgentUpdate(id=agent.id, state="active"))
    assert db.get_agent_by_id(agent.id) == agent

    agent.state = "missing"
    db.set_agents_missing_if_not_updated_for(timedelta(0))
    assert db.get_agent_by_id(agent.id) == agent

    db.remove_missing_agents_if_not_updated_for(timedelta(0))
    with pytest.raises(NotFoundError):
        db.get_agent_by_id(agent.id)


def test_sessions(db):
    requirements = create_session_requirements(random.Random(7))
    session_id = db.request_session(requirements)
    assert db.get_queued_session_by_id(session_id) == QueuedSession(
        id=session_id, requirements=requirements
    )


def test_assigning_sessions(db):
    agent = register_agent(db, default_agent(24 * GIB))
    requirements = default_session_requirements(4 * GIB)
    session_id = db.request_session(requirements)

    selected = [SessionGpu(index=agent.gpus[0].index, vram_required=requirements.gpus[0].vram_required)]
    db.assign_session(session_id, agent.id, selected)

    session = Session(
        id=session_id, state="assigned", address=agent.address, version="Test", gpus=selected
    )
    assert db.get_session_by_id(session_id) == session

    agent.sessions.append(session)
    assert db.get_agent_by_id(agent.id) == agent

    agent.sessions[0].state = "active"
    session = Session(
        id=session_id, state="active", address=agent.address, version="Test", gpus=selected
    )
    db.update_agent(
        AgentUpdate(
            id=agent.id,
            state=agent.state,
            sessions_update={session_id: SessionUpdate(state="active")},
        )
    )
    assert db.get_agent_by_id(agent.id) == agent
    assert agent.sessions[0] == session
    assert db.get_session_by_id(session_id) == session

    agent.sessions = []
    db.update_agent(
        AgentUpdate(
            id=agent.id,
            state=agent.state,
            sessions_update={session_id: SessionUpdate(state="closed")},
        )
    )
    assert db.get_agent_by_id(agent.id) == agent
    session.state = "closed"
    assert db.get_session_by_id(session_id) == session


def test_get_queued_sessions(db):
    expected = {}
    for _ in range(4):
        requirements = default_session_requirements(4 * GIB)
        expected[db.request_session(requirements)] = requirements

    for queued in db.get_queued_sessions():
        assert queued.requirements == expected.pop(queued.id)
    assert expected == {}


def test_queued_sessions_exclude_assigned(db):
    agent = register_agent(db, default_agent(24 * GIB))
    assigned = db.request_session(default_session_requirements(GIB))
    waiting = db.request_session(default_session_requirements(GIB))
    db.assign_session(assigned, agent.id, [SessionGpu(index=0, vram_required=GIB)])
    assert [queued.id for queued in db.get_queued_sessions()] == [waiting]


def test_vram_accounting(db):
    agent = register_agent(db, default_agent(24 * GIB))
    session_id = db.request_session(default_session_requirements(4 * GIB))
    db.assign_session(session_id, agent.id, [SessionGpu(index=0, vram_required=4 * GIB)])

    assert list(db.get_available_agents_matching(21 * GIB)) == []
    assert [a.id for a in db.get_available_agents_matching(20 * GIB)] == [agent.id]

    db.update_agent(
        AgentUpdate(id=agent.id, sessions_update={session_id: SessionUpdate(state="closed")})
    )
    assert [a.id for a in db.get_available_agents_matching(24 * GIB)] == [agent.id]


def test_get_agents_only_active(db):
    active = register_agent(db, default_agent(GIB))
    disabled = default_agent(GIB)
    disabled.state = "disabled"
    register_agent(db, disabled)
    assert [a.id for a in db.get_agents("")] == [active.id]


def test_update_agent_metrics(db):
    agent = register_agent(db, default_agent(8 * GIB))
    metrics = GpuMetrics(vram_used=GIB, utilization_gpu=40, power_draw=90000)
    db.update_agent(AgentUpdate(id=agent.id, gpus=[metrics]))
    assert db.get_agent_by_id(agent.id).gpus[0].metrics == metrics


def test_update_agent_too_many_gpus(db):
    agent = register_agent(db, default_agent(8 * GIB))
    with pytest.raises(IndexError):
        db.update_agent(AgentUpdate(id=agent.id, gpus=[GpuMetrics(), GpuMetrics()]))


def test_closing_agent_removes_it_and_its_sessions(db):
    agent = register_agent(db, default_agent(8 * GIB))
    session_id = db.request_session(default_session_requirements(GIB))
    db.assign_session(session_id, agent.id, [SessionGpu(index=0, vram_required=GIB)])
    db.update_agent(AgentUpdate(id=agent.id, state="closed"))
    with pytest.raises(NotFoundError):
        db.get_agent_by_id(agent.id)
    with pytest.raises(NotFoundError):
        db.get_session_by_id(session_id)


def test_update_unknown_agent(db):
    with pytest.raises(NotFoundError):
        db.update_agent(AgentUpdate(id="00000000-0000-0000-0000-000000000000"))


def test_invalid_id(db):
    with pytest.raises(ValueError):
        db.get_agent_by_id("not-a-uuid")


def test_cancel_session(db):
    queued = db.request_session(default_session_requirements(GIB))
    db.cancel_session(queued)
    assert db.get_session_by_id(queued).state == "closed"

    agent = register_agent(db, default_agent(8 * GIB))
    assigned = db.request_session(default_session_requirements(GIB))
    db.assign_session(assigned, agent.id, [SessionGpu(index=0, vram_required=GIB)])
    db.cancel_session(assigned)
    assert db.get_session_by_id(assigned).state == "canceling"


def test_missing_respects_duration():
    clock = FakeClock(1000.0)
    db = MemoryStorage(clock=clock)
    agent_id = db.register_agent(default_agent(GIB))
    clock.now = 1005.0

    db.set_agents_missing_if_not_updated_for(timedelta(seconds=10))
    assert db.get_agent_by_id(agent_id).state == "active"

    db.set_agents_missing_if_not_updated_for(timedelta(seconds=5))
    assert db.get_agent_by_id(agent_id).state == "missing"

    db.remove_missing_agents_if_not_updated_for(timedelta(seconds=1))
    assert db.get_agent_by_id(agent_id).state == "missing"

    clock.now = 1010.0
    db.remove_missing_agents_if_not_updated_for(timedelta(seconds=5))
    with pytest.raises(NotFoundError):
        db.get_agent_by_id(agent_id)


def test_calculate_percentiles_uniform():
    counts = {key: 1 for key in range(1, 11)}
    assert calculate_percentiles(counts, 10) == Percentile(
        p100=10, p90=9, p75=7, p50=5, p25=2, p10=1
    )


def test_calculate_percentiles_single_value():
    assert calculate_percentiles({4: 1}, 1) == Percentile(p100=4)


def test_calculate_percentiles_empty():
    with pytest.raises(ValueError):
        calculate_percentiles({}, 0)


def test_aggregate_empty(db):
    data = db.aggregate_data()
    assert data.agents == 0
    assert data.gpus == 0
    assert data.vram_gb_available == Percentile()


def test_aggregate_data(db):
    agent = Agent(
        state="active",
        address="127.0.0.1:43210",
        gpus=[
            Gpu(index=0, name="A", vram=8 * GIB,
                metrics=GpuMetrics(vram_used=2 * GIB, utilization_gpu=50, power_draw=100000)),
            Gpu(index=1, name="B", vram=16 * GIB,
                metrics=GpuMetrics(vram_used=0, utilization_gpu=30, power_draw=50000)),
        ],
    )
    agent_id = db.register_agent(agent)
    session_id = db.request_session(default_session_requirements(GIB))
    db.assign_session(session_id, agent_id, [SessionGpu(index=0, vram_required=GIB)])

    data = db.aggregate_data()
    assert data.agents == 1
    assert data.agents_by_status == {"active": 1}
    assert data.sessions == 1
    assert data.sessions_by_status == {"assigned": 1}
    assert data.gpus == 2
    assert data.gpus_by_gpu_name == {"A": 1, "B": 1}
    assert data.vram == 24 * GIB
    assert data.vram_used == 2 * GIB
    assert data.vram_gb_available == Percentile(p100=16, p90=6, p75=6, p50=6, p25=0, p10=0)
    assert data.vram_gb_available_by_gpu_name["A"] == Percentile(p100=6)
    assert data.utilization == 40.0
    assert data.utilization_by_gpu_name == {"A": 25.0, "B": 15.0}
    assert data.power_draw == 75.0
    assert data.power_draw_by_gpu_name == {"A": 50.0, "B": 25.0}


def test_pools_and_permissions(db):
    pool = db.create_pool("Team")
    assert db.get_pool(pool.id).name == "Team"

    db.add_permission(pool.id, "alice", Permission.ADMIN)
    db.add_permission(pool.id, "bob", Permission.CREATE_SESSION)

    assert db.get_pool_permissions(pool.id).user_ids == {
        "alice": [Permission.ADMIN],
        "bob": [Permission.CREATE_SESSION],
    }

    permissions = db.get_permissions("alice").permissions
    assert list(permissions) == [Permission.ADMIN]
    [entry] = permissions[Permission.ADMIN]
    assert (entry.id, entry.name, entry.user_count, entry.agent_count) == (pool.id, "Team", 2, 0)

    db.remove_permission(pool.id, "bob", Permission.CREATE_SESSION)
    assert db.get_pool_permissions(pool.id).user_ids == {"alice": [Permission.ADMIN]}
    with pytest.raises(NotFoundError):
        db.remove_permission(pool.id, "bob", Permission.CREATE_SESSION)

    db.delete_pool(pool.id)
    with pytest.raises(NotFoundError):
        db.get_pool(pool.id)
    assert db.get_permissions("alice").permissions is None


def test_permission_counts_active_agents_and_sessions(db):
    pool = db.create_pool("Team")
    db.add_permission(pool.id, "alice", "register_agent")
    agent = default_agent(8 * GIB)
    agent.pool_id = pool.id
    agent_id = db.register_agent(agent)
    session_id = db.request_session(default_session_requirements(GIB))
    db.assign_session(session_id, agent_id, [SessionGpu(index=0, vram_required=GIB)])
    db.update_agent(
        AgentUpdate(id=agent_id, sessions_update={session_id: SessionUpdate(state="active")})
    )

    [entry] = db.get_permissions("alice").permissions[Permission.REGISTER_AGENT]
    assert (entry.agent_count, entry.session_count, entry.user_count) == (1, 1, 1)


def test_add_permission_unknown_pool(db):
    with pytest.raises(NotFoundError):
        db.add_permission("missing-pool", "alice", Permission.ADMIN)