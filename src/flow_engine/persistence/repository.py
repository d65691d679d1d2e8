"""
PostgreSQL repository for flow definitions and run state.
"""

import logging
import json
import uuid
from typing import Optional, List, Any
import asyncpg

from ..core.interface import FlowStore, RunStore
from ..models.flow import FlowDefinition, FlowStatus
from ..models.run import ExecutionLogEntry, RunState, RunStatus, utcnow

logger = logging.getLogger(__name__)


def _json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


class FlowRepository(FlowStore, RunStore):
    """
    Repository for flow engine persistence.

    Handles storage for:
    - Flow definitions (one row per immutable version)
    - Flow runs
    - Run execution logs (append-only)
    """

    def __init__(self, pool: asyncpg.Pool):
        """
        Initialize repository.

        Args:
            pool: Database connection pool
        """
        self.pool = pool

    async def init_tables(self):
        """Initialize database tables."""
        async with self.pool.acquire() as conn:
            # Flow definitions
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS flow_definitions (
                    id VARCHAR(255) NOT NULL,
                    version INTEGER NOT NULL,
                    name VARCHAR(255),
                    description TEXT,
                    status VARCHAR(50) DEFAULT 'draft',
                    definition JSONB NOT NULL,
                    created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (id, version)
                )
            """)

            # Flow runs
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS flow_runs (
                    run_id VARCHAR(255) PRIMARY KEY,
                    flow_id VARCHAR(255),
                    flow_version INTEGER DEFAULT 1,
                    conversation_id VARCHAR(255),
                    contact_id VARCHAR(255),
                    mode VARCHAR(20) DEFAULT 'live',
                    current_node_id VARCHAR(255) NOT NULL,
                    status VARCHAR(50) DEFAULT 'running',
                    variables JSONB,
                    execution_path JSONB,
                    resume_at TIMESTAMPTZ,
                    awaiting_variable VARCHAR(255),
                    attempts INTEGER DEFAULT 0,
                    error TEXT,
                    created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                    completed_at TIMESTAMPTZ
                )
            """)

            # Run logs
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS flow_run_logs (
                    id BIGSERIAL PRIMARY KEY,
                    run_id VARCHAR(255) REFERENCES flow_runs(run_id) ON DELETE CASCADE,
                    step_order INTEGER NOT NULL,
                    node_id VARCHAR(255) NOT NULL,
                    node_type VARCHAR(50) NOT NULL,
                    node_label VARCHAR(255),
                    outcome VARCHAR(20) NOT NULL,
                    branch VARCHAR(255),
                    error TEXT,
                    resolved_config JSONB,
                    context_snapshot JSONB,
                    duration_ms INTEGER DEFAULT 0,
                    logged_at TIMESTAMPTZ NOT NULL,
                    UNIQUE (run_id, step_order)
                )
            """)

            # Indexes
            await conn.execute("CREATE INDEX IF NOT EXISTS idx_flow_definitions_status ON flow_definitions(status)")
            await conn.execute("CREATE INDEX IF NOT EXISTS idx_flow_runs_conversation ON flow_runs(conversation_id, status)")
            await conn.execute("CREATE INDEX IF NOT EXISTS idx_flow_runs_created ON flow_runs(created_at)")

            logger.info("Flow engine tables initialized")

    # Flow Definitions

    async def save_flow_definition(self, flow: FlowDefinition) -> FlowDefinition:
        """Store `flow` as the next version of its id."""
        flow = flow.model_copy(deep=True)
        if not flow.id:
            flow.id = str(uuid.uuid4())

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                # Serialize version allocation per flow id
                await conn.execute("SELECT pg_advisory_xact_lock(hashtext($1))", flow.id)
                current = await conn.fetchval(
                    "SELECT MAX(version) FROM flow_definitions WHERE id = $1",
                    flow.id
                )
                flow.version = current + 1 if current else flow.version

                row = await conn.fetchrow("""
                    INSERT INTO flow_definitions
                    (id, version, name, description, status, definition, created_at, updated_at)
                    VALUES ($1, $2, $3, $4, $5, $6,
                        COALESCE((SELECT MIN(created_at) FROM flow_definitions WHERE id = $1), CURRENT_TIMESTAMP),
                        CURRENT_TIMESTAMP)
                    RETURNING created_at, updated_at
                """,
                    flow.id,
                    flow.version,
                    flow.name,
                    flow.description,
                    flow.status.value,
                    json.dumps(flow.export()),
                )

        flow.created_at = row["created_at"]
        flow.updated_at = row["updated_at"]
        logger.info(f"Saved flow {flow.id} v{flow.version}")
        return flow

    async def load_flow_definition(self, flow_id: str, version: Optional[int] = None) -> Optional[FlowDefinition]:
        """Get a flow by ID, latest version unless `version` is given."""
        async with self.pool.acquire() as conn:
            if version is None:
                row = await conn.fetchrow(
                    "SELECT * FROM flow_definitions WHERE id = $1 ORDER BY version DESC LIMIT 1",
                    flow_id
                )
            else:
                row = await conn.fetchrow(
                    "SELECT * FROM flow_definitions WHERE id = $1 AND version = $2",
                    flow_id, version
                )
            if row:
                return self._row_to_flow(row)
            return None

    async def list_flows(self) -> List[FlowDefinition]:
        """Latest version of every flow."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT * FROM (
                    SELECT DISTINCT ON (id) * FROM flow_definitions ORDER BY id, version DESC
                ) latest
                ORDER BY name
            """)
            return [self._row_to_flow(row) for row in rows]

    async def list_active_flows(self) -> List[FlowDefinition]:
        """Latest versions that are active, oldest flow first."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT * FROM (
                    SELECT DISTINCT ON (id) * FROM flow_definitions ORDER BY id, version DESC
                ) latest
                WHERE status = $1
                ORDER BY created_at
            """, FlowStatus.ACTIVE.value)
            return [self._row_to_flow(row) for row in rows]

    async def delete_flow(self, flow_id: str) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute("DELETE FROM flow_definitions WHERE id = $1", flow_id)
            return result != "DELETE 0"

    def _row_to_flow(self, row) -> FlowDefinition:
        """Convert database row to FlowDefinition."""
        definition = _json(row["definition"]) or {}
        definition.update({
            "id": row["id"],
            "version": row["version"],
            "status": row["status"],
            "createdAt": row["created_at"],
            "updatedAt": row["updated_at"],
        })
        return FlowDefinition.model_validate(definition)

    # Flow Runs

    async def save_run_state(self, state: RunState) -> None:
        """Upsert the run and append log entries not yet stored."""
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("""
                    INSERT INTO flow_runs
                    (run_id, flow_id, flow_version, conversation_id, contact_id, mode, current_node_id,
                     status, variables, execution_path, resume_at, awaiting_variable, attempts, error,
                     created_at, updated_at, completed_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17)
                    ON CONFLICT (run_id) DO UPDATE SET
                        current_node_id = EXCLUDED.current_node_id,
                        status = EXCLUDED.status,
                        variables = EXCLUDED.variables,
                        execution_path = EXCLUDED.execution_path,
                        resume_at = EXCLUDED.resume_at,
                        awaiting_variable = EXCLUDED.awaiting_variable,
                        attempts = EXCLUDED.attempts,
                        error = EXCLUDED.error,
                        updated_at = EXCLUDED.updated_at,
                        completed_at = EXCLUDED.completed_at
                """,
                    state.run_id,
                    state.flow_id,
                    state.flow_version,
                    state.conversation_id,
                    state.contact_id,
                    state.mode.value,
                    state.current_node_id,
                    state.status.value,
                    json.dumps(state.variables, default=str),
                    json.dumps(state.execution_path),
                    state.resume_at,
                    state.awaiting_variable,
                    state.attempts,
                    state.error,
                    state.created_at,
                    state.updated_at or utcnow(),
                    state.completed_at,
                )

                stored = await conn.fetchval(
                    "SELECT COUNT(*) FROM flow_run_logs WHERE run_id = $1",
                    state.run_id
                )
                new_entries = state.logs[stored:]
                if new_entries:
                    await conn.executemany("""
                        INSERT INTO flow_run_logs
                        (run_id, step_order, node_id, node_type, node_label, outcome, branch, error,
                         resolved_config, context_snapshot, duration_ms, logged_at)
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                    """, [
                        (
                            state.run_id,
                            stored + offset + 1,
                            entry.node_id,
                            entry.node_type,
                            entry.node_label,
                            entry.outcome.value,
                            entry.branch,
                            entry.error,
                            json.dumps(entry.resolved_config, default=str),
                            json.dumps(entry.context_snapshot, default=str),
                            entry.duration_ms,
                            entry.timestamp,
                        )
                        for offset, entry in enumerate(new_entries)
                    ])

    async def load_run_state(self, run_id: str) -> Optional[RunState]:
        """Get a run with its full log."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM flow_runs WHERE run_id = $1", run_id)
            if not row:
                return None
            log_rows = await conn.fetch(
                "SELECT * FROM flow_run_logs WHERE run_id = $1 ORDER BY step_order",
                run_id
            )
            return self._row_to_run(row, [self._row_to_log(r) for r in log_rows])

    async def find_waiting_run(self, conversation_id: str) -> Optional[RunState]:
        async with self.pool.acquire() as conn:
            run_id = await conn.fetchval("""
                SELECT run_id FROM flow_runs
                WHERE conversation_id = $1 AND status = $2
                ORDER BY updated_at DESC LIMIT 1
            """, conversation_id, RunStatus.WAITING_INPUT.value)
        if run_id is None:
            return None
        return await self.load_run_state(run_id)

    async def list_runs(self, conversation_id: Optional[str] = None, limit: int = 100) -> List[RunState]:
        """List runs, newest first. Logs are not loaded."""
        query = "SELECT * FROM flow_runs WHERE 1=1"
        params = []
        param_idx = 1

        if conversation_id:
            query += f" AND conversation_id = ${param_idx}"
            params.append(conversation_id)
            param_idx += 1

        query += f" ORDER BY created_at DESC LIMIT ${param_idx}"
        params.append(limit)

        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, *params)
            return [self._row_to_run(row, []) for row in rows]

    def _row_to_run(self, row, logs: List[ExecutionLogEntry]) -> RunState:
        """Convert database row to RunState."""
        return RunState(
            run_id=row["run_id"],
            flow_id=row["flow_id"],
            flow_version=row["flow_version"] or 1,
            conversation_id=row["conversation_id"],
            contact_id=row["contact_id"],
            mode=row["mode"],
            current_node_id=row["current_node_id"],
            status=RunStatus(row["status"]),
            variables=_json(row["variables"]) or {},
            execution_path=_json(row["execution_path"]) or [],
            resume_at=row["resume_at"],
            awaiting_variable=row["awaiting_variable"],
            attempts=row["attempts"] or 0,
            error=row["error"],
            logs=logs,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            completed_at=row["completed_at"],
        )

    def _row_to_log(self, row) -> ExecutionLogEntry:
        return ExecutionLogEntry(
            node_id=row["node_id"],
            node_type=row["node_type"],
            node_label=row["node_label"],
            resolved_config=_json(row["resolved_config"]) or {},
            outcome=row["outcome"],
            branch=row["branch"],
            error=row["error"],
            timestamp=row["logged_at"],
            duration_ms=row["duration_ms"] or 0,
            context_snapshot=_json(row["context_snapshot"]) or {},
        )
