"""Milestone rule definitions and default rule tables.

Admin rules are a prerequisite graph: each rule names the codes that must be
satisfied before it can be derived from documents. Engineering rules are a
strict ordered list completed by hand (or by cross-track triggers) and
validated as a gap-free prefix.

Document lookup is an ordered list of tagged selectors tried in turn:

    DocumentSelector("code", "TPC_METER")                  -> doc_type_code
    DocumentSelector("label_list", ("報竣掛表", "正式躉售"))  -> any legacy label
    DocumentSelector("legacy_label", "報竣掛表")            -> one legacy label

The first selector that finds a current document wins.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from solarops.models import db
from solarops.models.milestone import (
    CRITERION_ALL_PREREQUISITES,
    CRITERION_DOCUMENT_ISSUED,
    CRITERION_DOCUMENT_SUBMITTED,
    CRITERION_MANUAL,
    CRITERION_PROJECT_EXISTS,
    MilestoneRule,
    TRACK_ADMIN,
    TRACK_ENGINEERING,
)

logger = logging.getLogger(__name__)

SELECTOR_CODE = "code"
SELECTOR_LABEL_LIST = "label_list"
SELECTOR_LEGACY_LABEL = "legacy_label"
SELECTOR_KINDS = (SELECTOR_CODE, SELECTOR_LABEL_LIST, SELECTOR_LEGACY_LABEL)


@dataclass(frozen=True)
class DocumentSelector:
    kind: str
    value: str | tuple[str, ...]

    def to_dict(self) -> dict:
        value = list(self.value) if isinstance(self.value, tuple) else self.value
        return {"kind": self.kind, "value": value}

    @classmethod
    def from_dict(cls, data: dict) -> "DocumentSelector":
        kind = data.get("kind")
        if kind not in SELECTOR_KINDS:
            raise ValueError(f"Unknown selector kind: {kind!r}")
        value = data.get("value")
        if kind == SELECTOR_LABEL_LIST:
            value = tuple(value or ())
        return cls(kind=kind, value=value)


@dataclass(frozen=True)
class MilestoneRuleSpec:
    """Immutable view of one rule used by the reconciler."""

    code: str
    name: str
    track_type: str
    weight: float
    sort_order: int
    match_criterion: str = CRITERION_MANUAL
    prerequisites: tuple[str, ...] = ()
    selectors: tuple[DocumentSelector, ...] = ()
    treat_attachment_as_proof: bool = True

    @classmethod
    def from_model(cls, row: MilestoneRule) -> "MilestoneRuleSpec":
        return cls(
            code=row.code,
            name=row.name,
            track_type=row.track_type,
            weight=float(row.weight or 0),
            sort_order=row.sort_order or 0,
            match_criterion=row.match_criterion,
            prerequisites=tuple(row.prerequisites),
            selectors=tuple(DocumentSelector.from_dict(s) for s in row.selectors),
            treat_attachment_as_proof=bool(row.treat_attachment_as_proof),
        )

    def model_fields(self) -> dict:
        return {
            "code": self.code,
            "name": self.name,
            "track_type": self.track_type,
            "weight": self.weight,
            "sort_order": self.sort_order,
            "match_criterion": self.match_criterion,
            "treat_attachment_as_proof": self.treat_attachment_as_proof,
        }


@dataclass(frozen=True)
class CrossTrackTrigger:
    """Completing ``admin_code`` completes ``engineering_code`` as well."""

    admin_code: str
    engineering_code: str


@dataclass(frozen=True)
class RuleSet:
    admin: tuple[MilestoneRuleSpec, ...] = ()
    engineering: tuple[MilestoneRuleSpec, ...] = ()
    triggers: tuple[CrossTrackTrigger, ...] = ()

    @classmethod
    def from_specs(cls, specs, triggers=()) -> "RuleSet":
        ordered = sorted(specs, key=lambda r: (r.sort_order, r.code))
        return cls(
            admin=tuple(r for r in ordered if r.track_type == TRACK_ADMIN),
            engineering=tuple(r for r in ordered if r.track_type == TRACK_ENGINEERING),
            triggers=tuple(triggers),
        )


def _doc_selectors(code, label, labels=None):
    selectors = [DocumentSelector(SELECTOR_CODE, code)]
    if labels:
        selectors.append(DocumentSelector(SELECTOR_LABEL_LIST, tuple(labels)))
    selectors.append(DocumentSelector(SELECTOR_LEGACY_LABEL, label))
    return tuple(selectors)


# ── Default admin track ──────────────────────────────────────────────────────

ADMIN_RULES: tuple[MilestoneRuleSpec, ...] = (
    MilestoneRuleSpec(
        "ADMIN_01_CREATED", "建檔完成", TRACK_ADMIN, 10, 1,
        CRITERION_PROJECT_EXISTS,
    ),
    MilestoneRuleSpec(
        "ADMIN_02_TAIPOWER_SUBMIT", "台電申請送件", TRACK_ADMIN, 10, 2,
        CRITERION_DOCUMENT_SUBMITTED, ("ADMIN_01_CREATED",),
        _doc_selectors("TPC_REVIEW", "審查意見書"),
    ),
    MilestoneRuleSpec(
        "ADMIN_03_TAIPOWER_OPINION", "取得台電審查意見書", TRACK_ADMIN, 10, 3,
        CRITERION_DOCUMENT_ISSUED, ("ADMIN_02_TAIPOWER_SUBMIT",),
        _doc_selectors("TPC_REVIEW", "審查意見書"),
    ),
    MilestoneRuleSpec(
        "ADMIN_04_ENERGY_APPROVAL", "能源署同意備案", TRACK_ADMIN, 10, 4,
        CRITERION_DOCUMENT_ISSUED, ("ADMIN_03_TAIPOWER_OPINION",),
        _doc_selectors("MOEA_CONSENT", "同意備案", ("同意備案", "綠能容許")),
    ),
    MilestoneRuleSpec(
        "ADMIN_05_MISC_EXEMPT", "免雜項執照完成/回函", TRACK_ADMIN, 10, 5,
        CRITERION_DOCUMENT_ISSUED, ("ADMIN_04_ENERGY_APPROVAL",),
        _doc_selectors("BUILD_EXEMPT_COMP", "免雜項竣工"),
    ),
    MilestoneRuleSpec(
        "ADMIN_06_TAIPOWER_DETAIL", "台電細部協商完成", TRACK_ADMIN, 10, 6,
        CRITERION_DOCUMENT_ISSUED, ("ADMIN_05_MISC_EXEMPT",),
        _doc_selectors("TPC_NEGOTIATION", "細部協商"),
    ),
    MilestoneRuleSpec(
        "ADMIN_07_PPA_SIGNED", "躉售合約完成", TRACK_ADMIN, 10, 7,
        CRITERION_DOCUMENT_ISSUED, ("ADMIN_06_TAIPOWER_DETAIL",),
        _doc_selectors("TPC_CONTRACT", "躉售合約"),
    ),
    MilestoneRuleSpec(
        "ADMIN_08_METER_INSTALLED", "報竣掛表完成", TRACK_ADMIN, 10, 8,
        CRITERION_DOCUMENT_ISSUED, ("ADMIN_07_PPA_SIGNED",),
        _doc_selectors(
            "TPC_METER", "報竣掛表",
            ("報竣掛表", "正式躉售", "派員訪查併聯函", "電表租約"),
        ),
    ),
    MilestoneRuleSpec(
        "ADMIN_09_EQUIPMENT_REG", "能源署設備登記完成", TRACK_ADMIN, 10, 9,
        CRITERION_DOCUMENT_ISSUED, ("ADMIN_08_METER_INSTALLED",),
        _doc_selectors("MOEA_REGISTER", "設備登記"),
    ),
    MilestoneRuleSpec(
        "ADMIN_10_CLOSED", "行政結案", TRACK_ADMIN, 10, 10,
        CRITERION_ALL_PREREQUISITES,
        (
            "ADMIN_01_CREATED",
            "ADMIN_02_TAIPOWER_SUBMIT",
            "ADMIN_03_TAIPOWER_OPINION",
            "ADMIN_04_ENERGY_APPROVAL",
            "ADMIN_05_MISC_EXEMPT",
            "ADMIN_06_TAIPOWER_DETAIL",
            "ADMIN_07_PPA_SIGNED",
            "ADMIN_08_METER_INSTALLED",
            "ADMIN_09_EQUIPMENT_REG",
        ),
    ),
)

# ── Default engineering track (strict order) ─────────────────────────────────

ENGINEERING_RULES: tuple[MilestoneRuleSpec, ...] = (
    MilestoneRuleSpec("ENG_01_SITE_SURVEY", "現勘完成", TRACK_ENGINEERING, 5, 11),
    MilestoneRuleSpec("ENG_02_DESIGN_FINAL", "設計/圖說定稿", TRACK_ENGINEERING, 10, 12),
    MilestoneRuleSpec("ENG_03_MATERIAL_ORDER", "材料採購下單", TRACK_ENGINEERING, 10, 13),
    MilestoneRuleSpec("ENG_04_STRUCTURE", "鋼構/支架完成", TRACK_ENGINEERING, 15, 14),
    MilestoneRuleSpec("ENG_05_MODULE", "模組安裝完成", TRACK_ENGINEERING, 15, 15),
    MilestoneRuleSpec("ENG_06_ELECTRICAL", "機電配線完成", TRACK_ENGINEERING, 10, 16),
    MilestoneRuleSpec("ENG_07_INVERTER", "逆變器/箱體完成", TRACK_ENGINEERING, 10, 17),
    MilestoneRuleSpec("ENG_08_GRID_TEST", "併聯測試完成", TRACK_ENGINEERING, 10, 18),
    MilestoneRuleSpec("ENG_09_DEFECT_FIX", "掛表前缺失改善完成", TRACK_ENGINEERING, 10, 19),
    MilestoneRuleSpec("ENG_10_HANDOVER", "試運轉/工程交付", TRACK_ENGINEERING, 5, 20),
)

# Admin completions that prove engineering work has happened.
CROSS_TRACK_TRIGGERS: tuple[CrossTrackTrigger, ...] = (
    CrossTrackTrigger("ADMIN_02_TAIPOWER_SUBMIT", "ENG_01_SITE_SURVEY"),
    CrossTrackTrigger("ADMIN_03_TAIPOWER_OPINION", "ENG_01_SITE_SURVEY"),
    CrossTrackTrigger("ADMIN_04_ENERGY_APPROVAL", "ENG_01_SITE_SURVEY"),
) + tuple(
    CrossTrackTrigger("ADMIN_08_METER_INSTALLED", rule.code) for rule in ENGINEERING_RULES
)

DEFAULT_RULES = ADMIN_RULES + ENGINEERING_RULES


def default_rule_set() -> RuleSet:
    return RuleSet.from_specs(DEFAULT_RULES, CROSS_TRACK_TRIGGERS)


def seed_default_rules() -> int:
    """Insert any default rule whose code is missing. Returns rows added.

    Existing rows are left untouched so that weights or ordering edited by
    an administrator survive re-seeding. Caller commits.
    """
    existing = {code for (code,) in db.session.query(MilestoneRule.code).all()}
    added = 0
    for spec in DEFAULT_RULES:
        if spec.code in existing:
            continue
        row = MilestoneRule(**spec.model_fields())
        row.prerequisites = spec.prerequisites
        row.selectors = [s.to_dict() for s in spec.selectors]
        db.session.add(row)
        added += 1
    if added:
        db.session.flush()
        logger.info("Seeded %d milestone rules", added)
    return added
