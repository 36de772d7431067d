"""
Repository interfaces used by the computation engine
"""
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Set

from app.models.computation import (
    CarryoverRecord,
    ComputationSummary,
    Course,
    Department,
    DepartmentTally,
    MasterComputationRun,
    ResultRecord,
    SemesterResultRecord,
    Student,
    StudentMutation,
    Term,
)


class StudentRepository(ABC):
    @abstractmethod
    async def list_eligible_student_ids(self, department_id: str, term_id: Optional[str] = None) -> List[str]:
        """
        Active students of the department in a stable order: those not withdrawn
        or terminated, plus those withdrawn or terminated by a computation of
        `term_id` itself
        """

    @abstractmethod
    async def fetch_students_with_details(self, student_ids: List[str], term_id: str) -> List[Student]:
        """Students with `history` filled for `term_id`"""


class ResultRepository(ABC):
    @abstractmethod
    async def fetch_results_by_students(self, student_ids: List[str], term_id: str) -> Dict[str, List[ResultRecord]]:
        ...

    @abstractmethod
    async def core_courses_for_level(self, department_id: str, level: str) -> List[Course]:
        ...


class RegistrationRepository(ABC):
    @abstractmethod
    async def has_registration(self, student_id: str, term_id: str) -> bool:
        ...

    @abstractmethod
    async def registered_among(self, student_ids: List[str], term_id: str) -> Set[str]:
        ...


class TermRepository(ABC):
    @abstractmethod
    async def get(self, term_id: str) -> Optional[Term]:
        ...

    @abstractmethod
    async def active_term_for_department(self, department_id: str) -> Optional[Term]:
        ...

    @abstractmethod
    async def lock_term(self, term_id: str, locked_by: Optional[str] = None) -> None:
        ...


class DepartmentRepository(ABC):
    @abstractmethod
    async def get(self, department_id: str) -> Optional[Department]:
        ...

    @abstractmethod
    async def list_active(self) -> List[Department]:
        ...


class SummaryRepository(ABC):
    @abstractmethod
    async def get(self, summary_id: str) -> Optional[ComputationSummary]:
        ...

    @abstractmethod
    async def save(self, summary: ComputationSummary) -> ComputationSummary:
        ...

    @abstractmethod
    async def list_for_master_run(self, master_run_id: str) -> List[ComputationSummary]:
        ...


class MasterRunRepository(ABC):
    @abstractmethod
    async def create(self, run: MasterComputationRun) -> MasterComputationRun:
        ...

    @abstractmethod
    async def get(self, master_run_id: str) -> Optional[MasterComputationRun]:
        ...

    @abstractmethod
    async def record_department(
        self, master_run_id: str, department_id: str, tally: DepartmentTally
    ) -> Optional[MasterComputationRun]:
        """Atomically store the department tally; the last department to report finishes the run"""

    @abstractmethod
    async def reopen(self, master_run_id: str, department_ids: List[str]) -> Optional[MasterComputationRun]:
        """Atomically drop the tallies of the departments queued again and set the run processing"""

    @abstractmethod
    async def update_status(self, master_run_id: str, status: str) -> None:
        ...


class CarryoverRepository(ABC):
    @abstractmethod
    async def get(self, carryover_id: str) -> Optional[CarryoverRecord]:
        ...

    @abstractmethod
    async def list_for_student(self, student_id: str, include_cleared: bool = True) -> List[CarryoverRecord]:
        ...

    @abstractmethod
    async def mark_cleared(
        self,
        record: CarryoverRecord,
        cleared_by: str,
        remark: Optional[str] = None,
        result_id: Optional[str] = None,
    ) -> CarryoverRecord:
        """Clear the record, decrement the student's counter and drop the course from the active set"""


class BulkWriteSink(ABC):
    @abstractmethod
    async def write_student_updates(self, updates: List[StudentMutation]) -> None:
        ...

    @abstractmethod
    async def write_carryovers(self, records: List[CarryoverRecord]) -> None:
        ...

    @abstractmethod
    async def write_semester_results(self, records: List[SemesterResultRecord]) -> None:
        ...


class Notifier(ABC):
    @abstractmethod
    async def notify(self, recipient_id: Optional[str], type: str, title: str, message: str, data: Optional[dict] = None) -> None:
        ...


class Repositories:
    """Bundle of collaborators handed to the orchestrator and the API"""

    def __init__(
        self,
        students: StudentRepository,
        results: ResultRepository,
        registrations: RegistrationRepository,
        terms: TermRepository,
        departments: DepartmentRepository,
        summaries: SummaryRepository,
        master_runs: MasterRunRepository,
        carryovers: CarryoverRepository,
        sink: BulkWriteSink,
        notifier: Notifier,
    ):
        self.students = students
        self.results = results
        self.registrations = registrations
        self.terms = terms
        self.departments = departments
        self.summaries = summaries
        self.master_runs = master_runs
        self.carryovers = carryovers
        self.sink = sink
        self.notifier = notifier
