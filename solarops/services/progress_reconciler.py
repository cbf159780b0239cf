"""
Milestone progress reconciler.

Derives a project's milestone completions and its cached progress summary
from its current documents and stored milestone rows.

Pure layer (no database, unit-tested directly):
    evaluate_admin_track        rule-graph walk over the admin rules
    apply_cross_track_triggers  admin completions -> engineering completions
    evaluate_engineering_track  gap-free prefix validation
    weighted_progress / blend_overall
    evaluate_project            all of the above for one project

Persistence layer:
    ProgressReconciler.reconcile_project / reconcile_all

Completion is monotonic: a stored completed milestone is never re-derived or
cleared here. Only an explicit user toggle (milestone_service) may
uncomplete one. Running the reconciler twice without input changes issues
no writes the second time.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from solarops.core.exceptions import NotFoundError, StoreError
from solarops.models.milestone import (
    CRITERION_ALL_PREREQUISITES,
    CRITERION_DOCUMENT_ISSUED,
    CRITERION_DOCUMENT_SUBMITTED,
    CRITERION_PROJECT_EXISTS,
)
from solarops.models.project import (
    CONSTRUCTION_AWAITING_METER,
    CONSTRUCTION_METER_INSTALLED,
    CONSTRUCTION_NOT_STARTED,
    CONSTRUCTION_STARTED,
)
from solarops.services.document_store import DocumentStore
from solarops.services.milestone_rules import (
    CROSS_TRACK_TRIGGERS,
    SELECTOR_CODE,
    SELECTOR_LABEL_LIST,
    SELECTOR_LEGACY_LABEL,
    MilestoneRuleSpec,
    RuleSet,
)

logger = logging.getLogger(__name__)

ADMIN_STAGE_DONE = "已完成"


def _round2(value) -> float:
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def _utcnow():
    return datetime.now(timezone.utc)


# ── Value types ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ProgressWeights:
    """Share of the admin and engineering tracks in the overall percentage."""

    admin_weight: float = 50.0
    engineering_weight: float = 50.0

    @classmethod
    def from_dict(cls, data: dict | None, default: "ProgressWeights | None" = None):
        default = default or cls()
        data = data or {}
        return cls(
            admin_weight=float(data.get("admin_weight", default.admin_weight)),
            engineering_weight=float(data.get("engineering_weight", default.engineering_weight)),
        )

    def to_dict(self) -> dict:
        return {"admin_weight": self.admin_weight, "engineering_weight": self.engineering_weight}


@dataclass(frozen=True)
class DocumentFacts:
    """Snapshot of one current document as seen by the rule evaluation."""

    id: int
    doc_type_code: str
    doc_type: str | None = None
    submitted_at: datetime | None = None
    issued_at: datetime | None = None
    has_attachment: bool = False

    @classmethod
    def from_model(cls, doc) -> "DocumentFacts":
        return cls(
            id=doc.id,
            doc_type_code=doc.doc_type_code,
            doc_type=doc.doc_type,
            submitted_at=doc.submitted_at,
            issued_at=doc.issued_at,
            has_attachment=doc.has_attachment,
        )


@dataclass(frozen=True)
class ProjectSnapshot:
    id: int
    created_at: datetime | None
    progress: dict

    @classmethod
    def from_model(cls, project) -> "ProjectSnapshot":
        return cls(id=project.id, created_at=project.created_at, progress=project.progress_dict())


@dataclass(frozen=True)
class MilestoneState:
    code: str
    is_completed: bool

    @classmethod
    def from_model(cls, row) -> "MilestoneState":
        return cls(code=row.milestone_code, is_completed=bool(row.is_completed))


@dataclass(frozen=True)
class MilestoneWrite:
    """A pending completion: insert a new row or flip an open row to done."""

    code: str
    insert: bool
    completed_at: datetime
    note: str


@dataclass
class AdminEvaluation:
    satisfied: list[str] = field(default_factory=list)
    writes: list[MilestoneWrite] = field(default_factory=list)
    stage: str | None = None
    progress: float = 0.0


@dataclass
class EngineeringEvaluation:
    validated: list[str] = field(default_factory=list)
    construction_status: str = CONSTRUCTION_NOT_STARTED
    stage: str | None = None
    progress: float = 0.0


@dataclass
class ProjectEvaluation:
    admin: AdminEvaluation
    engineering: EngineeringEvaluation
    overall_progress: float
    milestone_writes: list[MilestoneWrite]

    def progress_fields(self) -> dict:
        return {
            "admin_progress": self.admin.progress,
            "engineering_progress": self.engineering.progress,
            "overall_progress": self.overall_progress,
            "admin_stage": self.admin.stage,
            "engineering_stage": self.engineering.stage,
            "construction_status": self.engineering.construction_status,
        }


# ── Document lookup ──────────────────────────────────────────────────────────


def _selector_matches(selector, doc) -> bool:
    if selector.kind == SELECTOR_CODE:
        return doc.doc_type_code == selector.value
    if selector.kind == SELECTOR_LEGACY_LABEL:
        return doc.doc_type is not None and doc.doc_type == selector.value
    return False


def find_matching_document(rule: MilestoneRuleSpec, documents) -> DocumentFacts | None:
    """Try the rule's selectors in order; the first one with a hit wins."""
    for selector in rule.selectors:
        if selector.kind == SELECTOR_LABEL_LIST:
            # label order decides, not document order
            for label in selector.value:
                for doc in documents:
                    if doc.doc_type == label:
                        return doc
            continue
        for doc in documents:
            if _selector_matches(selector, doc):
                return doc
    return None


def evaluate_rule(rule, documents, satisfied, project_created_at=None):
    """Evaluate one admin rule whose prerequisites are already satisfied.

    Returns ``(is_met, completed_at, note)``. ``completed_at`` is None when
    the rule is met but no source date exists; the caller uses "now".
    Anything the rule cannot decide counts as not met.
    """
    criterion = rule.match_criterion

    if criterion == CRITERION_PROJECT_EXISTS:
        return True, project_created_at, "auto: project created"

    if criterion == CRITERION_ALL_PREREQUISITES:
        met = all(code in satisfied for code in rule.prerequisites)
        return met, None, "auto: all prerequisites complete"

    if criterion not in (CRITERION_DOCUMENT_SUBMITTED, CRITERION_DOCUMENT_ISSUED):
        return False, None, None

    doc = find_matching_document(rule, documents)
    if doc is None:
        return False, None, None

    attachment_ok = rule.treat_attachment_as_proof and doc.has_attachment
    if criterion == CRITERION_DOCUMENT_SUBMITTED:
        source_date = doc.submitted_at or doc.issued_at
        met = bool(source_date) or attachment_ok
    else:
        source_date = doc.issued_at
        met = bool(source_date) or attachment_ok

    if not met:
        return False, None, None
    if source_date:
        return True, source_date, f"auto: {doc.doc_type_code} date"
    return True, None, f"auto: {doc.doc_type_code} attachment"


# ── Tracks ───────────────────────────────────────────────────────────────────


def weighted_progress(rules, done_codes) -> float:
    total = sum(r.weight for r in rules)
    if total <= 0:
        return 0.0
    done = sum(r.weight for r in rules if r.code in done_codes)
    return _round2(done / total * 100)


def blend_overall(admin_progress, engineering_progress, weights: ProgressWeights) -> float:
    return _round2(
        admin_progress * weights.admin_weight / 100
        + engineering_progress * weights.engineering_weight / 100
    )


def evaluate_admin_track(rules, documents, milestones, *, project_created_at=None, now=None):
    """Walk admin rules in order and derive newly satisfied milestones.

    ``milestones`` maps code -> MilestoneState for the stored rows.
    """
    now = now or _utcnow()
    result = AdminEvaluation()
    satisfied: set[str] = set()

    for rule in rules:
        stored = milestones.get(rule.code)
        if stored is not None and stored.is_completed:
            satisfied.add(rule.code)
            result.satisfied.append(rule.code)
            continue
        if not all(code in satisfied for code in rule.prerequisites):
            continue
        met, completed_at, note = evaluate_rule(rule, documents, satisfied, project_created_at)
        if not met:
            continue
        satisfied.add(rule.code)
        result.satisfied.append(rule.code)
        result.writes.append(
            MilestoneWrite(
                code=rule.code,
                insert=stored is None,
                completed_at=completed_at or now,
                note=note,
            )
        )

    if rules:
        pending = next((r for r in rules if r.code not in satisfied), None)
        result.stage = pending.name if pending else ADMIN_STAGE_DONE
    result.progress = weighted_progress(rules, satisfied)
    return result


def apply_cross_track_triggers(triggers, admin_satisfied, engineering_rules, milestones, *, now=None):
    """Engineering completions implied by satisfied admin milestones."""
    now = now or _utcnow()
    known = {r.code for r in engineering_rules}
    satisfied = set(admin_satisfied)
    writes: list[MilestoneWrite] = []
    seen: set[str] = set()
    for trigger in triggers:
        target = trigger.engineering_code
        if trigger.admin_code not in satisfied or target not in known or target in seen:
            continue
        stored = milestones.get(target)
        if stored is not None and stored.is_completed:
            continue
        seen.add(target)
        writes.append(
            MilestoneWrite(
                code=target,
                insert=stored is None,
                completed_at=now,
                note=f"auto: triggered by {trigger.admin_code}",
            )
        )
    return writes


def evaluate_engineering_track(rules, completed_codes) -> EngineeringEvaluation:
    """Validate stored completions as a gap-free prefix of ``rules``.

    The last rule is the handover step and counts only once every other
    engineering rule is validated.
    """
    result = EngineeringEvaluation()
    if not rules:
        return result

    completed = set(completed_codes)
    handover = rules[-1]
    validated: list[str] = []
    for rule in rules:
        if rule.code not in completed:
            break
        if rule is handover and len(validated) != len(rules) - 1:
            break
        validated.append(rule.code)

    done = set(validated)
    if handover.code in done:
        status = CONSTRUCTION_METER_INSTALLED
    elif len(rules) >= 2 and rules[-2].code in done:
        status = CONSTRUCTION_AWAITING_METER
    elif any(r.code in done for r in rules[:-2]):
        status = CONSTRUCTION_STARTED
    else:
        status = CONSTRUCTION_NOT_STARTED

    by_code = {r.code: r for r in rules}
    result.validated = validated
    result.construction_status = status
    result.stage = by_code[validated[-1]].name if validated else None
    result.progress = weighted_progress(rules, done)
    return result


def evaluate_project(
    rule_set: RuleSet,
    documents,
    milestones,
    weights: ProgressWeights,
    *,
    project_created_at=None,
    now=None,
) -> ProjectEvaluation:
    """Full evaluation of one project. Pure: returns writes, performs none."""
    now = now or _utcnow()
    admin = evaluate_admin_track(
        rule_set.admin, documents, milestones,
        project_created_at=project_created_at, now=now,
    )
    triggered = apply_cross_track_triggers(
        rule_set.triggers, admin.satisfied, rule_set.engineering, milestones, now=now,
    )
    completed = {code for code, state in milestones.items() if state.is_completed}
    completed.update(w.code for w in triggered)
    engineering = evaluate_engineering_track(rule_set.engineering, completed)
    overall = blend_overall(admin.progress, engineering.progress, weights)
    return ProjectEvaluation(
        admin=admin,
        engineering=engineering,
        overall_progress=overall,
        milestone_writes=admin.writes + triggered,
    )


# ── Persistence ──────────────────────────────────────────────────────────────


@dataclass
class ReconcileResult:
    project_id: int
    progress: dict
    admin_satisfied: list[str]
    engineering_validated: list[str]
    completed_codes: list[str] = field(default_factory=list)
    progress_changed: bool = False
    progress_persisted: bool = True
    writes: int = 0

    def to_dict(self) -> dict:
        return {
            "project_id": self.project_id,
            "progress": self.progress,
            "admin_satisfied": self.admin_satisfied,
            "engineering_validated": self.engineering_validated,
            "completed_codes": self.completed_codes,
            "progress_changed": self.progress_changed,
            "progress_persisted": self.progress_persisted,
            "writes": self.writes,
        }


@dataclass
class BatchReconcileResult:
    results: list[ReconcileResult] = field(default_factory=list)
    failed: dict = field(default_factory=dict)

    @property
    def writes(self) -> int:
        return sum(r.writes for r in self.results)

    def to_dict(self) -> dict:
        return {
            "total": len(self.results) + len(self.failed),
            "synced": len(self.results),
            "failed": len(self.failed),
            "errors": {str(k): v for k, v in self.failed.items()},
            "changed": sum(1 for r in self.results if r.writes),
            "writes": self.writes,
        }


class ProgressReconciler:
    """Apply ``evaluate_project`` results through a ``DocumentStore``."""

    def __init__(self, store=None, *, weights=None, rule_set=None, actor="system", clock=None):
        self.store = store or DocumentStore()
        self.weights = weights or ProgressWeights()
        self.rule_set = rule_set
        self.actor = actor
        self.clock = clock or _utcnow

    def load_rule_set(self) -> RuleSet:
        if self.rule_set is not None:
            return self.rule_set
        specs = [MilestoneRuleSpec.from_model(row) for row in self.store.fetch_rules()]
        return RuleSet.from_specs(specs, CROSS_TRACK_TRIGGERS)

    def reconcile_project(self, project_id: int) -> ReconcileResult:
        projects = self.store.fetch_projects([project_id])
        if not projects:
            raise NotFoundError(resource="Project", resource_id=project_id)
        rule_set = self.load_rule_set()
        inputs = self._snapshot(
            projects,
            self.store.fetch_documents([project_id]),
            self.store.fetch_milestones([project_id]),
        )
        snapshot, documents, milestones = inputs[0]
        return self._reconcile(snapshot, documents, milestones, rule_set)

    def reconcile_all(self, project_ids=None) -> BatchReconcileResult:
        """Reconcile many projects from one bulk read.

        Each project runs the same per-project path as ``reconcile_project``;
        a store failure on one project is recorded and the batch continues.
        """
        projects = self.store.fetch_projects(project_ids)
        ids = [p.id for p in projects]
        rule_set = self.load_rule_set()
        inputs = self._snapshot(
            projects,
            self.store.fetch_documents(ids),
            self.store.fetch_milestones(ids),
        )

        batch = BatchReconcileResult()
        for snapshot, documents, milestones in inputs:
            try:
                result = self._reconcile(snapshot, documents, milestones, rule_set)
            except StoreError as exc:
                logger.warning(
                    "Reconcile failed for project %s: %s", snapshot.id, exc,
                    extra={"project_id": snapshot.id},
                )
                batch.failed[snapshot.id] = str(exc)
                continue
            batch.results.append(result)

        logger.info(
            "Batch reconcile done: %d synced, %d failed, %d writes",
            len(batch.results), len(batch.failed), batch.writes,
        )
        return batch

    @staticmethod
    def _snapshot(projects, documents, milestones):
        """Group bulk-read rows per project as immutable inputs.

        Taken before any write so that commits (which expire ORM state)
        cannot change what later projects in a batch see.
        """
        docs_by_project = defaultdict(list)
        for doc in documents:
            docs_by_project[doc.project_id].append(DocumentFacts.from_model(doc))
        states_by_project = defaultdict(dict)
        for row in milestones:
            states_by_project[row.project_id][row.milestone_code] = MilestoneState.from_model(row)
        return [
            (
                ProjectSnapshot.from_model(project),
                docs_by_project[project.id],
                states_by_project[project.id],
            )
            for project in projects
        ]

    def _reconcile(self, snapshot, documents, milestones, rule_set) -> ReconcileResult:
        project_id = snapshot.id
        evaluation = evaluate_project(
            rule_set,
            documents,
            milestones,
            self.weights,
            project_created_at=snapshot.created_at,
            now=self.clock(),
        )

        result = ReconcileResult(
            project_id=project_id,
            progress=evaluation.progress_fields(),
            admin_satisfied=evaluation.admin.satisfied,
            engineering_validated=evaluation.engineering.validated,
        )

        for write in evaluation.milestone_writes:
            self.store.upsert_milestone(
                project_id,
                write.code,
                {
                    "is_completed": True,
                    "completed_at": write.completed_at,
                    "completed_by": self.actor,
                    "note": write.note,
                },
            )
            result.completed_codes.append(write.code)
            result.writes += 1

        if result.progress != snapshot.progress:
            result.progress_changed = True
            try:
                self.store.update_project_progress(project_id, result.progress)
                result.writes += 1
            except StoreError:
                result.progress_persisted = False
                logger.warning(
                    "Progress cache for project %s not saved", project_id,
                    exc_info=True,
                    extra={"project_id": project_id},
                )

        if result.writes:
            logger.info(
                "Project %s reconciled: %d milestone(s) completed, overall %.2f%%",
                project_id, len(result.completed_codes), evaluation.overall_progress,
                extra={"project_id": project_id},
            )
        return result
