"""
ReconciliationService: audits local records for structural damage left by
partial or out-of-order syncs.

Three independent checks run on every audit; an exception in one is logged
and reported without stopping the others.

  orphaned_child      packages whose customer_id points at nothing. Repaired
                      by relinking them to the customer that already stands
                      for a profile with that id, by materializing that
                      customer from the profile, or by a low-confidence
                      placeholder customer. A package without a customer
                      can't be displayed, so an approximate parent is
                      preferred over a broken reference.

  missing_customer    registered profiles that no customer row points at.
                      Repaired by creating a registered customer from the
                      profile.

  duplicate_identity  customers sharing an external id or user id. Only
                      flagged: merging identities is destructive and stays a
                      manual decision.

Running the audit twice in a row reports nothing new the second time once
all orphans and profiles have been repaired.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Tuple

from yardsync.models.records import CustomerType, Profile
from yardsync.sync.errors import IntegrityViolation
from yardsync.sync.repository import RecordRepository

logger = logging.getLogger(__name__)

PLACEHOLDER_NAME = "Unknown Customer"
PLACEHOLDER_CONFIDENCE = 0.0
PROFILE_CONFIDENCE = 1.0
CRITICAL_ISSUE_COUNT = 5


class IssueKind(str, Enum):
    ORPHANED_CHILD = "orphaned_child"
    DUPLICATE_IDENTITY = "duplicate_identity"
    MISSING_CUSTOMER = "missing_customer"


class Resolution(str, Enum):
    AUTO_REPAIRED = "auto_repaired"
    FLAGGED = "flagged"


@dataclass
class ReconciliationIssue:
    kind: IssueKind
    affected_ids: Tuple[int, ...]
    resolution: Resolution
    detail: str = ""
    placeholder: bool = False
    detected_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class ReconciliationReport:
    issues: List[ReconciliationIssue] = field(default_factory=list)
    fixed_count: int = 0
    errors: List[str] = field(default_factory=list)  # checks that could not run

    @property
    def health(self) -> str:
        if not self.issues:
            return "healthy"
        return "critical" if len(self.issues) > CRITICAL_ISSUE_COUNT else "warning"


class ReconciliationService:
    def __init__(self, repository: RecordRepository):
        self.repository = repository

    def audit_and_repair(self) -> ReconciliationReport:
        report = ReconciliationReport()
        for name, check in (
            ("orphan check", self._check_orphans),
            ("profile check", self._check_profiles),
            ("duplicate check", self._check_duplicates),
        ):
            try:
                check(report)
            except Exception as exc:
                logger.exception("Reconciliation %s failed", name)
                report.errors.append(f"{name}: {exc}")

        logger.info(
            "Reconciliation finished: %d issues, %d fixed, health=%s",
            len(report.issues), report.fixed_count, report.health,
        )
        return report

    def _check_orphans(self, report: ReconciliationReport) -> None:
        by_parent: Dict[int, List[int]] = defaultdict(list)
        for package in self.repository.find_orphans():
            by_parent[package.customer_id].append(package.id)

        for parent_id, package_ids in sorted(by_parent.items()):
            try:
                detail, placeholder = self._repair_parent(parent_id)
            except IntegrityViolation as exc:
                logger.error("Could not repair orphaned package(s) %s: %s", package_ids, exc)
                report.issues.append(ReconciliationIssue(
                    kind=IssueKind.ORPHANED_CHILD,
                    affected_ids=tuple(package_ids),
                    resolution=Resolution.FLAGGED,
                    detail=str(exc),
                ))
                continue

            logger.warning(
                "Repaired %d orphaned package(s) %s: %s", len(package_ids), package_ids, detail
            )
            report.issues.append(ReconciliationIssue(
                kind=IssueKind.ORPHANED_CHILD,
                affected_ids=tuple(package_ids),
                resolution=Resolution.AUTO_REPAIRED,
                detail=detail,
                placeholder=placeholder,
            ))
            report.fixed_count += 1

    def _repair_parent(self, parent_id: int) -> Tuple[str, bool]:
        """Give the orphans a customer. Returns (detail, is_placeholder)."""
        profile = self.repository.find_profile(parent_id)
        if profile is not None:
            existing = self.repository.find_customer_for_user(profile.id)
            if existing is not None:
                # The user already has a customer under another id
                moved = self.repository.reassign_children(parent_id, existing.id)
                return f"{moved} package(s) relinked to customer {existing.id} of user {profile.id}", False
            self.repository.create_parent(_profile_fields(profile), parent_id=parent_id)
            return f"customer {parent_id} rebuilt from profile", False

        self.repository.create_parent(
            {
                "customer_type": CustomerType.PACKAGE_ONLY.value,
                "full_name": PLACEHOLDER_NAME,
                "is_placeholder": True,
                "mapping_confidence": PLACEHOLDER_CONFIDENCE,
            },
            parent_id=parent_id,
        )
        return f"placeholder customer {parent_id} created", True

    def _check_profiles(self, report: ReconciliationReport) -> None:
        for profile in self.repository.find_profiles_without_customer():
            try:
                customer_id = self.repository.create_parent(_profile_fields(profile))
            except IntegrityViolation as exc:
                logger.error("Could not create a customer for profile %s: %s", profile.id, exc)
                report.issues.append(ReconciliationIssue(
                    kind=IssueKind.MISSING_CUSTOMER,
                    affected_ids=(profile.id,),
                    resolution=Resolution.FLAGGED,
                    detail=str(exc),
                ))
                continue

            logger.warning("Created customer %s for profile %s", customer_id, profile.id)
            report.issues.append(ReconciliationIssue(
                kind=IssueKind.MISSING_CUSTOMER,
                affected_ids=(profile.id,),
                resolution=Resolution.AUTO_REPAIRED,
                detail=f"customer {customer_id} created from profile",
            ))
            report.fixed_count += 1

    def _check_duplicates(self, report: ReconciliationReport) -> None:
        for group in self.repository.find_duplicate_identities():
            logger.warning(
                "Customers %s share %s=%s; flagged for manual merge",
                list(group.customer_ids), group.field, group.value,
            )
            report.issues.append(ReconciliationIssue(
                kind=IssueKind.DUPLICATE_IDENTITY,
                affected_ids=group.customer_ids,
                resolution=Resolution.FLAGGED,
                detail=f"{group.field}={group.value}",
            ))


def _profile_fields(profile: Profile) -> Dict[str, Any]:
    return {
        "customer_type": CustomerType.REGISTERED.value,
        "full_name": profile.full_name,
        "email": profile.email,
        "phone_number": profile.phone_number,
        "address": profile.address,
        "user_id": profile.id,
        "mapping_confidence": PROFILE_CONFIDENCE,
    }
