"""
Academic standing engine

Decision tree, evaluated in order:
1. not registered for the term -> suspension / termination branch, no GPA rules
2. CGPA below the withdrawal cutoff beyond the first year of study -> withdrawn
3. CGPA or semester GPA below the probation cutoffs -> probation
4. otherwise excellent or good

The engine never writes anything; final mode applies the decision later.
"""
from typing import Optional
from pydantic import BaseModel, ConfigDict

from app.computation.constants import (
    Action,
    NO_ACTION,
    PREVIEW_ACTION_PREFIX,
    ProbationStatus,
    Remark,
    SuspensionReason,
    TerminationStatus,
)
from app.computation.rules import StandingPolicy
from app.models.computation import Student, Suspension


class StandingDecision(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    probation_status: ProbationStatus = ProbationStatus.NONE
    termination_status: TerminationStatus = TerminationStatus.NONE
    remark: Remark
    action_taken: str = NO_ACTION
    reason: Optional[str] = None
    suspension: Optional[Suspension] = None
    suspension_lifted: bool = False
    total_carryovers: int = 0
    is_preview: bool = False
    gpa_evaluated: bool = True

    @property
    def is_removed(self) -> bool:
        """Withdrawn or terminated this run"""
        return self.termination_status != TerminationStatus.NONE.value


def preview_action(action: str) -> str:
    if action == NO_ACTION or action.startswith(PREVIEW_ACTION_PREFIX):
        return action
    return f"{PREVIEW_ACTION_PREFIX}{action}"


def strip_preview_action(action: str) -> str:
    if action.startswith(PREVIEW_ACTION_PREFIX):
        return action[len(PREVIEW_ACTION_PREFIX):]
    return action


class AcademicStandingEngine:
    def __init__(self, policy: Optional[StandingPolicy] = None):
        self.policy = policy or StandingPolicy.get_default_policy()

    def evaluate(
        self,
        student: Student,
        semester_gpa: float,
        cgpa: float,
        total_carryovers: int,
        registered: bool,
        is_final: bool,
        term_id: Optional[str] = None,
    ) -> StandingDecision:
        if not registered:
            decision = self._unregistered(student, term_id)
        else:
            decision = self._by_gpa(student, semester_gpa, cgpa, term_id)

        decision.total_carryovers = total_carryovers
        if not is_final:
            decision.is_preview = True
            decision.action_taken = preview_action(decision.action_taken)
        return decision

    def _unregistered(self, student: Student, term_id: Optional[str]) -> StandingDecision:
        current = student.active_suspension
        probation = student.probation_at_term_start(term_id)
        no_registration = current is not None and current.reason == SuspensionReason.NO_REGISTRATION.value

        if no_registration and term_id is not None and current.since_term_id == term_id:
            # suspended for this same term by an earlier attempt
            return self._suspend_for_no_registration(probation, current)

        if no_registration:
            return StandingDecision(
                probation_status=probation,
                termination_status=TerminationStatus.TERMINATED,
                remark=Remark.TERMINATED,
                action_taken=Action.TERMINATED_NO_REGISTRATION.value,
                reason=f"No registration again after suspension since term {current.since_term_id}",
                suspension=current,
                gpa_evaluated=False,
            )

        if current and current.reason == SuspensionReason.SCHOOL_APPROVED.value:
            return StandingDecision(
                probation_status=probation,
                remark=Remark.SUSPENDED,
                action_taken=Action.SUSPENSION_MAINTAINED.value,
                reason="School-approved suspension",
                suspension=current,
                gpa_evaluated=False,
            )

        return self._suspend_for_no_registration(
            probation, Suspension(reason=SuspensionReason.NO_REGISTRATION, since_term_id=term_id),
        )

    @staticmethod
    def _suspend_for_no_registration(probation: str, suspension: Suspension) -> StandingDecision:
        return StandingDecision(
            probation_status=probation,
            remark=Remark.SUSPENDED,
            action_taken=Action.SUSPENDED_NO_REGISTRATION.value,
            reason="No course registration for the term",
            suspension=suspension,
            gpa_evaluated=False,
        )

    def _by_gpa(self, student: Student, semester_gpa: float, cgpa: float, term_id: Optional[str]) -> StandingDecision:
        p = self.policy
        was_on_probation = student.probation_at_term_start(term_id) == ProbationStatus.PROBATION.value

        suspension = student.active_suspension
        lifted = False
        if suspension and suspension.reason == SuspensionReason.NO_REGISTRATION.value:
            suspension = None
            lifted = True

        if cgpa < p.withdrawal_cgpa and student.year_of_study >= p.withdrawal_min_year:
            return StandingDecision(
                probation_status=ProbationStatus.NONE,
                termination_status=TerminationStatus.WITHDRAWN,
                remark=Remark.WITHDRAWN,
                action_taken=Action.WITHDRAWN_CGPA_LOW.value,
                reason=f"CGPA {cgpa:.2f} below {p.withdrawal_cgpa:.2f}",
                suspension=suspension,
                suspension_lifted=lifted,
            )

        if cgpa < p.probation_cgpa or semester_gpa < p.probation_semester_gpa:
            if cgpa < p.probation_cgpa:
                reason = f"CGPA {cgpa:.2f} below {p.probation_cgpa:.2f}"
            else:
                reason = f"Semester GPA {semester_gpa:.2f} below {p.probation_semester_gpa:.2f}"
            action = Action.PROBATION_CONTINUED if was_on_probation else Action.PLACED_ON_PROBATION
            return StandingDecision(
                probation_status=ProbationStatus.PROBATION,
                remark=Remark.PROBATION,
                action_taken=action.value,
                reason=reason,
                suspension=suspension,
                suspension_lifted=lifted,
            )

        remark = Remark.EXCELLENT if cgpa >= p.excellent_cgpa else Remark.GOOD
        return StandingDecision(
            probation_status=ProbationStatus.NONE,
            remark=remark,
            action_taken=Action.PROBATION_LIFTED.value if was_on_probation else NO_ACTION,
            suspension=suspension,
            suspension_lifted=lifted,
        )
