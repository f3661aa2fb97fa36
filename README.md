# gpupool

Storage back ends for a controller that hands out GPU sessions to a pool of
agents. An agent registers its GPUs. Clients request sessions with VRAM
requirements. The controller assigns queued sessions to agents that have
enough VRAM left, and tracks session and connection state as agents report in.

Both back ends implement the abstract `gpupool.types.Storage` interface. Each
can be used as a context manager, which calls `close()` on exit:

- `gpupool.memdb.MemoryStorage` keeps everything in process memory. Open it
  with `gpupool.memdb.open_storage()`.
- `gpupool.sqlstore.SqlStorage` keeps everything in an SQLite database. Open it
  with `gpupool.sqlstore.open_storage("sqlite", dsn)`. The `dsn` is an SQLite
  path, or a `file:` URI such as `"file::memory:?cache=shared"`. You can also
  pass an open `sqlite3.Connection` to `SqlStorage(...)` directly.

## Installing

```
pip install .
pip install .[test]   # with the test requirements
```

## Example

```python
from gpupool import memdb
from gpupool.types import Agent, Gpu, GpuRequirements, SessionGpu, SessionRequirements

with memdb.open_storage() as store:
    agent_id = store.register_agent(Agent(
        state="active",
        hostname="node-1",
        address="127.0.0.1:43210",
        version="1.0",
        gpus=[Gpu(index=0, name="Example GPU", vram=24 * 1024**3)],
    ))

    session_id = store.request_session(SessionRequirements(
        version="1.0",
        gpus=[GpuRequirements(vram_required=4 * 1024**3)],
    ))

    for agent in store.get_available_agents_matching(4 * 1024**3):
        store.assign_session(session_id, agent.id,
                             [SessionGpu(index=0, vram_required=4 * 1024**3)])
        break

    print(store.get_session_by_id(session_id).state)   # "assigned"
```

A lookup that finds nothing raises `gpupool.types.NotFoundError`, a
`LookupError`. For the in-memory store, an id that is not a UUID raises
`ValueError`.

## The storage interface

- Agents:
  - `register_agent`
  - `get_agent_by_id`
  - `update_agent`, which takes an `AgentUpdate` with new state, GPU metrics
    and per-session updates.
  - `get_agents(pool_id)`
  - `get_available_agents_matching(vram)`
- Sessions:
  - `request_session`
  - `assign_session`
  - `cancel_session`. An unassigned session becomes `closed`; an assigned one
    becomes `canceling`.
  - `get_session_by_id`
  - `get_queued_session_by_id`
  - `get_queued_sessions`
- Pools and permissions:
  - `create_pool`
  - `get_pool`
  - `delete_pool`
  - `add_permission`
  - `remove_permission`
  - `get_permissions(user_id)`, which groups pools by `Permission`.
  - `get_pool_permissions(pool_id)`, which groups permissions by user id.
- Housekeeping:
  - `set_agents_missing_if_not_updated_for(duration)` marks active agents that
    have been silent for `duration` as missing.
  - `remove_missing_agents_if_not_updated_for(duration)` removes missing agents
    that have been silent for `duration`. The SQLite store marks them deleted
    rather than dropping the rows.
  - A `duration` is a `timedelta` or a number of seconds.
- `aggregate_data()` returns an `AggregatedData` with the following:
  - counts of agents, sessions and GPUs, by status or by GPU name;
  - total and used VRAM;
  - nearest-rank percentiles of free VRAM in whole GiB;
  - mean utilisation;
  - mean power draw in watts.

  `gpupool.memdb.calculate_percentiles(counts, total)` computes those
  percentiles from a histogram.

The two stores differ in a few ways:

- The in-memory store ignores `pool_id` in `get_agents`.
- The SQLite store returns at most 20 results from each listing.

## Other modules

- `gpupool.models`:
  - the state enums `AgentState`, `SessionState`, `ExitStatus` and
    `PermissionType`;
  - their lenient parsers, such as `agent_state_from_string`. These are
    case-insensitive, and text they do not recognise yields the unknown
    member.
- `gpupool.composite`: reads composite (row) literals such as `(key,value)`:
  - `parse_composite(src)` splits a literal into raw columns. An empty column
    or `NULL` gives `None`.
  - `convert_column(src, kind)` converts one column to `str`, `bytes`, `bool`,
    `int` or `float`.
  - `scan(src, *kinds)` parses a literal and converts every column.
  - Errors raise `CompositeError`.
- `gpupool.sqllog`: `SqlLogger` and `LogLevel`. `SqlLogger` routes SQL traces,
  slow-statement warnings and driver messages into the standard `logging`
  module, under the `gpupool.sql` logger.

## What it does not do

- There is no server or command-line program. The package is a library of
  storage back ends only.
- The relational store supports SQLite only. `open_storage("postgres", ...)`
  raises `ValueError`, and so does any other driver name.

## Running the tests

```
pytest
```