"""
Job Store

Process-wide store of Plans, Jobs, Approvals and Artifacts, keyed by id.

CONSTRAINTS:
- SINGLE WRITER: only the orchestrator mutates records
- NO DELETES: terminal jobs and resolved approvals are retained for audit
- SNAPSHOT: when a state file is configured, every flush rewrites it atomically
- AUDIT TRAIL: every step/approval transition is appended (fsync'd) to a JSONL log

Reads return the live records; the orchestrator hands out copies.
"""

import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Optional, Dict, Any, List

from .job_model import (
    Plan,
    Job,
    JobStatus,
    Approval,
    ApprovalStatus,
    Artifact,
)

logger = logging.getLogger("job_store")

STORE_VERSION = "1"


class JobStore:
    """
    In-memory job store with optional on-disk snapshot.

    Args:
        state_file: JSON snapshot path (None keeps state in memory only)
        transitions_file: JSONL audit path (None disables the audit log)
    """

    def __init__(
        self,
        state_file: Optional[Path] = None,
        transitions_file: Optional[Path] = None,
    ):
        self._state_file = state_file
        self._transitions_file = transitions_file
        self._plans: Dict[str, Plan] = {}
        self._jobs: Dict[str, Job] = {}
        self._approvals: Dict[str, Approval] = {}
        self._artifacts: Dict[str, Artifact] = {}
        self._seq = 0

    # -------------------------------------------------------------------------
    # Plans
    # -------------------------------------------------------------------------

    def save_plan(self, plan: Plan) -> None:
        self._plans[plan.plan_id] = plan

    def get_plan(self, plan_id: str) -> Optional[Plan]:
        return self._plans.get(plan_id)

    # -------------------------------------------------------------------------
    # Jobs
    # -------------------------------------------------------------------------

    def save_job(self, job: Job) -> None:
        """Insert or update a job and stamp its ordering sequence."""
        self._seq += 1
        job.update_seq = self._seq
        self._jobs[job.job_id] = job

    def get_job(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def all_jobs(self) -> List[Job]:
        return list(self._jobs.values())

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        limit: Optional[int] = None,
    ) -> List[Job]:
        """Jobs ordered by most-recently-updated first."""
        jobs = list(self._jobs.values())
        if status:
            jobs = [j for j in jobs if j.status == status]
        jobs.sort(key=lambda j: (j.updated_at, j.update_seq), reverse=True)
        if limit is not None:
            jobs = jobs[:limit]
        return jobs

    # -------------------------------------------------------------------------
    # Approvals
    # -------------------------------------------------------------------------

    def save_approval(self, approval: Approval) -> None:
        self._approvals[approval.approval_id] = approval

    def get_approval(self, approval_id: str) -> Optional[Approval]:
        return self._approvals.get(approval_id)

    def open_approval_for(self, job_id: str, step_no: int) -> Optional[Approval]:
        for approval in self._approvals.values():
            if approval.job_id == job_id and approval.step_no == step_no and approval.is_open:
                return approval
        return None

    def has_approved(self, job_id: str, step_no: int) -> bool:
        """True if an approve decision exists on record for the step."""
        return any(
            a.job_id == job_id and a.step_no == step_no and a.status == ApprovalStatus.APPROVED
            for a in self._approvals.values()
        )

    def list_approvals(
        self,
        status: Optional[ApprovalStatus] = None,
        job_id: Optional[str] = None,
    ) -> List[Approval]:
        """Approvals, newest first."""
        approvals = list(self._approvals.values())
        if status:
            approvals = [a for a in approvals if a.status == status]
        if job_id:
            approvals = [a for a in approvals if a.job_id == job_id]
        approvals.sort(key=lambda a: a.created_at, reverse=True)
        return approvals

    # -------------------------------------------------------------------------
    # Artifacts
    # -------------------------------------------------------------------------

    def add_artifact(self, artifact: Artifact) -> None:
        if artifact.artifact_id in self._artifacts:
            raise ValueError(f"Artifact {artifact.artifact_id} already exists")
        self._artifacts[artifact.artifact_id] = artifact

    def list_artifacts(self, job_id: Optional[str] = None) -> List[Artifact]:
        """Artifacts, newest first."""
        artifacts = list(self._artifacts.values())
        if job_id:
            artifacts = [a for a in artifacts if a.job_id == job_id]
        artifacts.sort(key=lambda a: a.created_at, reverse=True)
        return artifacts

    # -------------------------------------------------------------------------
    # Transition Audit (Append-Only)
    # -------------------------------------------------------------------------

    def record_transition(self, kind: str, **details: Any) -> None:
        """Append one transition record to the audit log."""
        if self._transitions_file is None:
            return
        record = {"timestamp": datetime.utcnow().isoformat(), "kind": kind, **details}
        try:
            self._append_record(self._transitions_file, record)
        except OSError as e:
            logger.error(f"Failed to append transition record: {e}")

    def read_transitions(self, job_id: Optional[str] = None) -> List[Dict[str, Any]]:
        if self._transitions_file is None or not self._transitions_file.exists():
            return []
        records = []
        with open(self._transitions_file, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError:
                    # Skip malformed lines
                    continue
                if job_id is None or record.get("job_id") == job_id:
                    records.append(record)
        return records

    def _append_record(self, file_path: Path, record: Dict[str, Any]) -> None:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        with open(file_path, "a") as f:
            f.write(json.dumps(record, default=str) + "\n")
            f.flush()
            os.fsync(f.fileno())

    # -------------------------------------------------------------------------
    # Snapshot Persistence
    # -------------------------------------------------------------------------

    def flush(self) -> None:
        """Write the full state snapshot atomically."""
        if self._state_file is None:
            return
        state = {
            "version": STORE_VERSION,
            "last_updated": datetime.utcnow().isoformat(),
            "seq": self._seq,
            "plans": {k: v.to_dict() for k, v in self._plans.items()},
            "jobs": {k: v.to_dict() for k, v in self._jobs.items()},
            "approvals": {k: v.to_dict() for k, v in self._approvals.items()},
            "artifacts": {k: v.to_dict() for k, v in self._artifacts.items()},
        }
        self._state_file.parent.mkdir(parents=True, exist_ok=True)
        temp_file = self._state_file.with_suffix(".tmp")
        try:
            temp_file.write_text(json.dumps(state, indent=2, default=str))
            temp_file.replace(self._state_file)
        except OSError as e:
            logger.error(f"Failed to save state file: {e}")
            if temp_file.exists():
                temp_file.unlink()

    def load(self) -> int:
        """
        Load the state snapshot, replacing in-memory records.

        Returns the number of jobs loaded. A missing or corrupt file leaves
        the store empty.
        """
        if self._state_file is None or not self._state_file.exists():
            return 0
        try:
            state = json.loads(self._state_file.read_text())
        except (json.JSONDecodeError, OSError) as e:
            logger.error(f"Failed to load state file: {e}")
            return 0
        if not isinstance(state, dict):
            logger.warning(f"State file is not a dict (was {type(state)}), ignoring")
            return 0

        self._plans = {k: Plan.from_dict(v) for k, v in (state.get("plans") or {}).items()}
        self._jobs = {k: Job.from_dict(v) for k, v in (state.get("jobs") or {}).items()}
        self._approvals = {k: Approval.from_dict(v) for k, v in (state.get("approvals") or {}).items()}
        self._artifacts = {k: Artifact.from_dict(v) for k, v in (state.get("artifacts") or {}).items()}
        self._seq = state.get("seq", len(self._jobs))
        logger.info(f"Loaded {len(self._jobs)} jobs and {len(self._approvals)} approvals from {self._state_file}")
        return len(self._jobs)
