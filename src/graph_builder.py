"""
Graph Builder Module
====================
Exports parsed etrace results into Neo4j.

The graph has two node labels and one relationship:
- (:Execution {execution_id, pid, exe, start, duration}) for every image run
- (:File {path, size}) for every reported file
- (:Execution)-[:ACCESSED {syscall, time}]->(:File) for every access

Timing-only results produce Execution nodes and no files.
"""

import logging
import json
from pathlib import Path
from typing import Dict, Iterable, List
from dataclasses import dataclass, field

from neo4j import GraphDatabase
from neo4j.exceptions import ServiceUnavailable, AuthError

from exec_timing import ExecveTiming
from file_access import ExecvePaths, FileAndSize, ProcessRuntime
from pid_tracker import ExecutionRecord

logger = logging.getLogger(__name__)


@dataclass
class GraphStats:
    """Statistics about the exported graph."""
    nodes_created: int = 0
    relationships_created: int = 0
    node_counts: Dict[str, int] = field(default_factory=dict)
    relationship_counts: Dict[str, int] = field(default_factory=dict)

    def add_nodes(self, label: str, count: int):
        self.nodes_created += count
        self.node_counts[label] = self.node_counts.get(label, 0) + count

    def add_relationships(self, rel_type: str, count: int):
        self.relationships_created += count
        self.relationship_counts[rel_type] = self.relationship_counts.get(rel_type, 0) + count

    def to_dict(self) -> Dict:
        return {
            'nodes_created': self.nodes_created,
            'relationships_created': self.relationships_created,
            'node_counts': self.node_counts,
            'relationship_counts': self.relationship_counts,
        }


def execution_id(pid: str, start: int) -> str:
    """A pid alone is not unique, the kernel reuses them."""
    return f"{pid}@{start}"


class ProcessGraphBuilder:
    """Writes execution records and file accesses to Neo4j."""

    def __init__(self, uri: str = "bolt://localhost:7687",
                 user: str = "neo4j",
                 password: str = "password"):
        """
        Initialize graph builder.

        Args:
            uri: Neo4j connection URI
            user: Neo4j username
            password: Neo4j password
        """
        self.uri = uri
        self.user = user
        self.password = password
        self.driver = None
        self.stats = GraphStats()

        logger.info(f"Initialized ProcessGraphBuilder for {uri}")

    def connect(self) -> bool:
        """Establish connection to Neo4j database."""
        try:
            self.driver = GraphDatabase.driver(self.uri, auth=(self.user, self.password))
            with self.driver.session() as session:
                session.run("RETURN 1").single()
            logger.info("Successfully connected to Neo4j database")
            return True
        except AuthError:
            logger.error("Authentication failed. Check Neo4j credentials.")
            return False
        except ServiceUnavailable:
            logger.error("Neo4j service unavailable. Ensure Neo4j is running.")
            return False

    def close(self):
        """Close Neo4j connection."""
        if self.driver:
            self.driver.close()
            self.driver = None
            logger.info("Closed Neo4j connection")

    def clear_database(self):
        """Remove all Execution and File nodes with their relationships."""
        logger.warning("Clearing etrace nodes from Neo4j database")
        with self.driver.session() as session:
            session.run("MATCH (n) WHERE n:Execution OR n:File DETACH DELETE n")
        logger.info("Database cleared")

    def create_constraints_and_indexes(self):
        """Create uniqueness constraints and indexes for lookups."""
        logger.info("Creating constraints and indexes")

        statements = [
            "CREATE CONSTRAINT IF NOT EXISTS FOR (e:Execution) REQUIRE e.execution_id IS UNIQUE",
            "CREATE CONSTRAINT IF NOT EXISTS FOR (f:File) REQUIRE f.path IS UNIQUE",
            "CREATE INDEX IF NOT EXISTS FOR (e:Execution) ON (e.exe)",
            "CREATE INDEX IF NOT EXISTS FOR (e:Execution) ON (e.start)",
        ]

        with self.driver.session() as session:
            for statement in statements:
                session.run(statement)
                logger.debug(f"Created: {statement[:60]}...")

        logger.info("Constraints and indexes created")

    def _write_executions(self, session, records: Iterable[ExecutionRecord]) -> int:
        rows = [
            {
                'execution_id': execution_id(record.pid, record.start),
                'pid': record.pid,
                'exe': record.exe,
                'start': record.start,
                'duration': record.duration,
            }
            for record in records
        ]
        if not rows:
            return 0
        session.run(
            """
            UNWIND $rows AS row
            MERGE (e:Execution {execution_id: row.execution_id})
            SET e.pid = row.pid,
                e.exe = row.exe,
                e.start = row.start,
                e.duration = row.duration
            """,
            rows=rows,
        )
        self.stats.add_nodes('Execution', len(rows))
        return len(rows)

    def _write_files(self, session, files: Iterable[FileAndSize]) -> int:
        sizes = {}
        for f in files:
            sizes.setdefault(f.path, f.size)
        rows = [{'path': path, 'size': size} for path, size in sizes.items()]
        if not rows:
            return 0
        session.run(
            """
            UNWIND $rows AS row
            MERGE (f:File {path: row.path})
            SET f.size = row.size
            """,
            rows=rows,
        )
        self.stats.add_nodes('File', len(rows))
        return len(rows)

    def _write_accesses(self, session, processes: Iterable[ProcessRuntime], paths: set) -> int:
        rows: List[Dict] = []
        for process in processes:
            for access in process.path_accesses:
                if access.path not in paths:
                    continue
                rows.append({
                    'execution_id': execution_id(process.pid, process.start),
                    'path': access.path,
                    'syscall': access.syscall,
                    'time': access.timestamp,
                })
        if not rows:
            return 0
        session.run(
            """
            UNWIND $rows AS row
            MATCH (e:Execution {execution_id: row.execution_id})
            MATCH (f:File {path: row.path})
            CREATE (e)-[:ACCESSED {syscall: row.syscall, time: row.time}]->(f)
            """,
            rows=rows,
        )
        self.stats.add_relationships('ACCESSED', len(rows))
        return len(rows)

    def export_timing(self, timing: ExecveTiming):
        """Create an Execution node for every retained exec record."""
        logger.info("Exporting exec timings")
        with self.driver.session() as session:
            count = self._write_executions(session, timing.exe_runtimes)
        logger.info(f"  Created {count} Execution nodes")

    def export_file_accesses(self, result: ExecvePaths):
        """
        Create Execution and File nodes and link them by ACCESSED.

        Only files in the (filtered) report get nodes, and only accesses to
        those files get relationships.
        """
        logger.info("Exporting file accesses")
        records = [
            ExecutionRecord(pid=p.pid, exe=p.exe, start=p.start, duration=p.duration)
            for p in result.processes
        ]
        with self.driver.session() as session:
            executions = self._write_executions(session, records)
            files = self._write_files(session, result.files)
            accesses = self._write_accesses(session, result.processes, {f.path for f in result.files})

        logger.info(f"  Created {executions} Execution nodes, {files} File nodes, "
                    f"{accesses} ACCESSED relationships")

    def save_statistics(self, output_dir: Path):
        """Save graph export statistics."""
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)

        stats_file = output_dir / "graph_stats.json"
        with open(stats_file, 'w') as f:
            json.dump(self.stats.to_dict(), f, indent=2)

        logger.info(f"Saved graph statistics to {stats_file.name}")
