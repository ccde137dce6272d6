from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import sqlalchemy as sa
from sqlalchemy import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ..dag import build_plan
from ..errors import HistoryConflict
from ..model import WorkflowDefinition, WorkflowRun
from ..parser import parse_workflow
from .models import Base, RunRecord, WorkflowDocument

logger = logging.getLogger(__name__)


def create_tables(engine: Engine) -> None:
    Base.metadata.create_all(engine)


class WorkflowStore:
    """
    Versioned workflow definitions. Saving never overwrites: every save of
    a name adds version N+1 and the latest version is the active one.
    """

    def __init__(self, session_factory: sessionmaker[Session]):
        self.session_factory = session_factory

    def save(self, name: str, source: str) -> int:
        """
        Validate and store a new version of `name`.

        Raises:
            SchemaError / CycleError: the document is rejected and nothing is stored
        """
        build_plan(parse_workflow(source))
        with self.session_factory() as s:
            with s.begin():
                current = s.scalar(
                    sa.select(sa.func.max(WorkflowDocument.version)).where(WorkflowDocument.name == name)
                )
                version = (current or 0) + 1
                s.add(WorkflowDocument(name=name, version=version, source=source))
        logger.info("stored workflow '%s' version %d", name, version)
        return version

    def get(self, name: str, version: Optional[int] = None) -> Optional[WorkflowDocument]:
        with self.session_factory() as s:
            q = sa.select(WorkflowDocument).where(WorkflowDocument.name == name)
            if version is None:
                q = q.order_by(WorkflowDocument.version.desc()).limit(1)
            else:
                q = q.where(WorkflowDocument.version == version)
            return s.scalar(q)

    def latest(self, name: str) -> Optional[WorkflowDefinition]:
        doc = self.get(name)
        return parse_workflow(doc.source) if doc else None

    def versions(self, name: str) -> List[int]:
        with self.session_factory() as s:
            return list(
                s.scalars(
                    sa.select(WorkflowDocument.version)
                    .where(WorkflowDocument.name == name)
                    .order_by(WorkflowDocument.version)
                )
            )

    def names(self) -> List[str]:
        with self.session_factory() as s:
            return list(s.scalars(sa.select(WorkflowDocument.name).distinct().order_by(WorkflowDocument.name)))


def _record_to_dict(rec: RunRecord) -> Dict[str, Any]:
    return {
        "run_id": rec.run_id,
        "workflow": rec.workflow,
        "run_name": rec.run_name,
        "status": rec.status,
        "event": rec.event,
        "created_at": rec.created_at.isoformat() if rec.created_at else None,
        "finished_at": rec.finished_at.isoformat() if rec.finished_at else None,
        "jobs": rec.jobs,
    }


class RunHistory:
    """Append-only record of finished runs, keyed by (workflow, run_id)."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self.session_factory = session_factory

    def append(self, run: WorkflowRun) -> None:
        """
        Raises:
            HistoryConflict: this run was already recorded
        """
        data = run.to_dict()
        try:
            with self.session_factory() as s:
                with s.begin():
                    s.add(
                        RunRecord(
                            workflow=run.workflow,
                            run_id=run.run_id,
                            run_name=run.run_name,
                            status=run.status.value,
                            event=data["event"],
                            jobs=data["jobs"],
                            created_at=run.created_at,
                            finished_at=run.finished_at,
                        )
                    )
        except IntegrityError as e:
            raise HistoryConflict(run.workflow, run.run_id) from e

    def get(self, workflow: str, run_id: str) -> Optional[Dict[str, Any]]:
        with self.session_factory() as s:
            rec = s.get(RunRecord, (workflow, run_id))
            return _record_to_dict(rec) if rec else None

    def find(self, run_id: str) -> Optional[Dict[str, Any]]:
        with self.session_factory() as s:
            rec = s.scalar(sa.select(RunRecord).where(RunRecord.run_id == run_id).limit(1))
            return _record_to_dict(rec) if rec else None

    def list(self, workflow: Optional[str] = None, limit: int = 20) -> List[Dict[str, Any]]:
        with self.session_factory() as s:
            q = sa.select(RunRecord)
            if workflow is not None:
                q = q.where(RunRecord.workflow == workflow)
            q = q.order_by(RunRecord.finished_at.desc(), RunRecord.run_id).limit(limit)
            return [_record_to_dict(rec) for rec in s.scalars(q)]
