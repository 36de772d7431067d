"""
Firestore implementations of the computation repositories

Uses the async client from firebase_admin. Batched writes are chunked to the
Firestore batch limit; counters use Increment and set membership uses
ArrayUnion / ArrayRemove so concurrent writers never clobber each other.
"""
import asyncio
import logging
from datetime import datetime
from typing import Dict, List, Optional, Set
from firebase_admin import firestore

from app.computation.constants import (
    CARRYOVERS_COLLECTION,
    COURSES_COLLECTION,
    DEPARTMENTS_COLLECTION,
    FIRESTORE_BATCH_LIMIT,
    MASTER_RUNS_COLLECTION,
    NOTIFICATIONS_COLLECTION,
    REGISTRATIONS_COLLECTION,
    RESULTS_COLLECTION,
    SEMESTER_RESULTS_COLLECTION,
    STUDENTS_COLLECTION,
    SUMMARIES_COLLECTION,
    TERMS_COLLECTION,
    TerminationStatus,
)
from app.models.computation import (
    CarryoverRecord,
    ComputationSummary,
    Course,
    Department,
    DepartmentTally,
    MasterComputationRun,
    Notification,
    OutstandingCourse,
    ResultRecord,
    SemesterResultRecord,
    Student,
    StudentHistory,
    StudentMutation,
    Term,
    TermHistory,
)
from app.models.firestore_models import get_client
from app.repositories.base import (
    BulkWriteSink,
    CarryoverRepository,
    DepartmentRepository,
    MasterRunRepository,
    Notifier,
    RegistrationRepository,
    Repositories,
    ResultRepository,
    StudentRepository,
    SummaryRepository,
    TermRepository,
)

# Firestore "in" queries accept at most 30 values
IN_QUERY_LIMIT = 30


def _chunks(items: List, size: int):
    for i in range(0, len(items), size):
        yield items[i:i + size]


async def _stream(query) -> List:
    return [doc async for doc in query.stream()]


async def _query_in(db, collection: str, field: str, values: List[str], *where) -> List:
    """Run `field in values` in chunks, with extra (field, op, value) filters"""
    async def one(chunk):
        q = db.collection(collection).where(field, "in", chunk)
        for f, op, v in where:
            q = q.where(f, op, v)
        return await _stream(q)

    parts = await asyncio.gather(*[one(chunk) for chunk in _chunks(list(values), IN_QUERY_LIMIT)])
    return [doc for part in parts for doc in part]


class _FirestoreRepository:
    def __init__(self, db=None):
        self.db = db or get_client()


class FirestoreStudentRepository(_FirestoreRepository, StudentRepository):
    async def list_eligible_student_ids(self, department_id: str, term_id: Optional[str] = None) -> List[str]:
        q = (self.db.collection(STUDENTS_COLLECTION)
             .where("department_id", "==", department_id)
             .where("is_active", "==", True))
        students = [Student.from_doc(d) for d in await _stream(q)]
        eligible = [
            s for s in students
            if s.termination_status == TerminationStatus.NONE.value or s.computed_in(term_id)
        ]
        eligible.sort(key=lambda s: (s.matric_number, s.id))
        return [s.id for s in eligible]

    async def fetch_students_with_details(self, student_ids: List[str], term_id: str) -> List[Student]:
        if not student_ids:
            return []
        refs = [self.db.collection(STUDENTS_COLLECTION).document(sid) for sid in student_ids]
        student_docs, semester_docs, carryover_docs = await asyncio.gather(
            self._get_all(refs),
            _query_in(self.db, SEMESTER_RESULTS_COLLECTION, "student_id", student_ids),
            _query_in(self.db, CARRYOVERS_COLLECTION, "student_id", student_ids, ("cleared", "==", False)),
        )

        semesters: Dict[str, List[SemesterResultRecord]] = {}
        for d in semester_docs:
            record = SemesterResultRecord.from_doc(d)
            if record.term_id != term_id:
                semesters.setdefault(record.student_id, []).append(record)

        outstanding: Dict[str, List[OutstandingCourse]] = {}
        for d in carryover_docs:
            c = CarryoverRecord.from_doc(d)
            outstanding.setdefault(c.student_id, []).append(OutstandingCourse(
                course_id=c.course_id,
                course_code=c.course_code,
                course_title=c.course_title,
                unit=c.unit,
                term_id=c.term_id,
            ))

        students = []
        for doc in student_docs:
            student = Student.from_doc(doc)
            if student is None:
                continue
            earlier = sorted(semesters.get(student.id, []), key=lambda r: (r.computed_at is not None, r.computed_at))
            student.history = StudentHistory(
                previous_tcp=sum(r.current.tcp for r in earlier),
                previous_tnu=sum(r.current.tnu for r in earlier),
                previous_gpa=earlier[-1].gpa if earlier else 0.0,
                academic_history=[
                    TermHistory(term_id=r.term_id, level=r.level, gpa=r.gpa, cgpa=r.cgpa,
                                tcp=r.current.tcp, tnu=r.current.tnu, remark=r.remark)
                    for r in earlier
                ],
                outstanding_courses=outstanding.get(student.id, []),
            )
            students.append(student)
        return students

    async def _get_all(self, refs) -> List:
        return [doc async for doc in self.db.get_all(refs) if doc.exists]


class FirestoreResultRepository(_FirestoreRepository, ResultRepository):
    async def fetch_results_by_students(self, student_ids: List[str], term_id: str) -> Dict[str, List[ResultRecord]]:
        docs = await _query_in(self.db, RESULTS_COLLECTION, "student_id", student_ids, ("term_id", "==", term_id))
        out: Dict[str, List[ResultRecord]] = {}
        for d in docs:
            record = ResultRecord.from_doc(d)
            out.setdefault(record.student_id, []).append(record)
        for records in out.values():
            records.sort(key=lambda r: r.course_code)
        return out

    async def core_courses_for_level(self, department_id: str, level: str) -> List[Course]:
        q = (self.db.collection(COURSES_COLLECTION)
             .where("department_id", "==", department_id)
             .where("level", "==", level)
             .where("is_core", "==", True))
        courses = [Course.from_doc(d) for d in await _stream(q)]
        return sorted(courses, key=lambda c: c.code)


class FirestoreRegistrationRepository(_FirestoreRepository, RegistrationRepository):
    async def has_registration(self, student_id: str, term_id: str) -> bool:
        q = (self.db.collection(REGISTRATIONS_COLLECTION)
             .where("student_id", "==", student_id)
             .where("term_id", "==", term_id)
             .limit(1))
        return bool(await _stream(q))

    async def registered_among(self, student_ids: List[str], term_id: str) -> Set[str]:
        docs = await _query_in(self.db, REGISTRATIONS_COLLECTION, "student_id", student_ids, ("term_id", "==", term_id))
        return {d.to_dict().get("student_id") for d in docs}


class FirestoreTermRepository(_FirestoreRepository, TermRepository):
    async def get(self, term_id: str) -> Optional[Term]:
        return Term.from_doc(await self.db.collection(TERMS_COLLECTION).document(term_id).get())

    async def active_term_for_department(self, department_id: str) -> Optional[Term]:
        q = (self.db.collection(TERMS_COLLECTION)
             .where("department_id", "==", department_id)
             .where("is_active", "==", True)
             .limit(1))
        docs = await _stream(q)
        return Term.from_doc(docs[0]) if docs else None

    async def lock_term(self, term_id: str, locked_by: Optional[str] = None) -> None:
        await self.db.collection(TERMS_COLLECTION).document(term_id).update({
            "is_locked": True,
            "locked_by": locked_by,
            "locked_at": firestore.SERVER_TIMESTAMP,
        })


class FirestoreDepartmentRepository(_FirestoreRepository, DepartmentRepository):
    async def get(self, department_id: str) -> Optional[Department]:
        return Department.from_doc(await self.db.collection(DEPARTMENTS_COLLECTION).document(department_id).get())

    async def list_active(self) -> List[Department]:
        q = self.db.collection(DEPARTMENTS_COLLECTION).where("is_active", "==", True)
        departments = [Department.from_doc(d) for d in await _stream(q)]
        return sorted(departments, key=lambda d: d.name)


class FirestoreSummaryRepository(_FirestoreRepository, SummaryRepository):
    async def get(self, summary_id: str) -> Optional[ComputationSummary]:
        return ComputationSummary.from_doc(await self.db.collection(SUMMARIES_COLLECTION).document(summary_id).get())

    async def save(self, summary: ComputationSummary) -> ComputationSummary:
        await self.db.collection(SUMMARIES_COLLECTION).document(summary.id).set(summary.to_dict())
        return summary

    async def list_for_master_run(self, master_run_id: str) -> List[ComputationSummary]:
        q = self.db.collection(SUMMARIES_COLLECTION).where("master_run_id", "==", master_run_id)
        return [ComputationSummary.from_doc(d) for d in await _stream(q)]


class FirestoreMasterRunRepository(_FirestoreRepository, MasterRunRepository):
    async def create(self, run: MasterComputationRun) -> MasterComputationRun:
        ref = self.db.collection(MASTER_RUNS_COLLECTION).document()
        await ref.set(run.to_dict())
        run.id = ref.id
        return run

    async def get(self, master_run_id: str) -> Optional[MasterComputationRun]:
        return MasterComputationRun.from_doc(
            await self.db.collection(MASTER_RUNS_COLLECTION).document(master_run_id).get()
        )

    async def record_department(
        self, master_run_id: str, department_id: str, tally: DepartmentTally
    ) -> Optional[MasterComputationRun]:
        ref = self.db.collection(MASTER_RUNS_COLLECTION).document(master_run_id)

        @firestore.async_transactional
        async def _apply(transaction):
            snapshot = await ref.get(transaction=transaction)
            run = MasterComputationRun.from_doc(snapshot)
            if run is None:
                logging.warning("Master run %s not found", master_run_id)
                return None
            run.apply_tally(department_id, tally)
            transaction.set(ref, run.to_dict())
            return run

        return await _apply(self.db.transaction())

    async def reopen(self, master_run_id: str, department_ids: List[str]) -> Optional[MasterComputationRun]:
        ref = self.db.collection(MASTER_RUNS_COLLECTION).document(master_run_id)

        @firestore.async_transactional
        async def _reopen(transaction):
            run = MasterComputationRun.from_doc(await ref.get(transaction=transaction))
            if run is None:
                return None
            run.reopen(department_ids)
            transaction.set(ref, run.to_dict())
            return run

        return await _reopen(self.db.transaction())

    async def update_status(self, master_run_id: str, status: str) -> None:
        await self.db.collection(MASTER_RUNS_COLLECTION).document(master_run_id).update({
            "status": status,
            "updated_at": firestore.SERVER_TIMESTAMP,
        })


class FirestoreCarryoverRepository(_FirestoreRepository, CarryoverRepository):
    async def get(self, carryover_id: str) -> Optional[CarryoverRecord]:
        return CarryoverRecord.from_doc(await self.db.collection(CARRYOVERS_COLLECTION).document(carryover_id).get())

    async def list_for_student(self, student_id: str, include_cleared: bool = True) -> List[CarryoverRecord]:
        q = self.db.collection(CARRYOVERS_COLLECTION).where("student_id", "==", student_id)
        if not include_cleared:
            q = q.where("cleared", "==", False)
        records = [CarryoverRecord.from_doc(d) for d in await _stream(q)]
        return sorted(records, key=lambda r: (r.term_id, r.course_code))

    async def mark_cleared(
        self,
        record: CarryoverRecord,
        cleared_by: str,
        remark: Optional[str] = None,
        result_id: Optional[str] = None,
    ) -> CarryoverRecord:
        batch = self.db.batch()
        batch.update(self.db.collection(CARRYOVERS_COLLECTION).document(record.id), {
            "cleared": True,
            "cleared_by": cleared_by,
            "cleared_at": firestore.SERVER_TIMESTAMP,
            "clearing_remark": remark,
            "clearing_result_id": result_id,
        })
        batch.update(self.db.collection(STUDENTS_COLLECTION).document(record.student_id), {
            "total_carryovers": firestore.Increment(-1),
            "carryover_courses": firestore.ArrayRemove([record.course_id]),
        })
        await batch.commit()
        return record.model_copy(update={
            "cleared": True,
            "cleared_by": cleared_by,
            "cleared_at": datetime.utcnow(),
            "clearing_remark": remark,
            "clearing_result_id": result_id,
        })


class FirestoreBulkWriteSink(_FirestoreRepository, BulkWriteSink):
    async def _commit(self, writes):
        """writes: list of (collection, doc_id, data); one batch per FIRESTORE_BATCH_LIMIT documents"""
        for chunk in _chunks(writes, FIRESTORE_BATCH_LIMIT):
            batch = self.db.batch()
            for collection, doc_id, data in chunk:
                batch.set(self.db.collection(collection).document(doc_id), data, merge=True)
            await batch.commit()

    async def write_student_updates(self, updates: List[StudentMutation]) -> None:
        writes = []
        for u in updates:
            data = dict(u.set_fields)
            if u.carryover_increment:
                data["total_carryovers"] = firestore.Increment(u.carryover_increment)
            if u.add_carryover_courses:
                data["carryover_courses"] = firestore.ArrayUnion(u.add_carryover_courses)
            data["updated_at"] = firestore.SERVER_TIMESTAMP
            writes.append((STUDENTS_COLLECTION, u.student_id, data))
        await self._commit(writes)

    async def write_carryovers(self, records: List[CarryoverRecord]) -> None:
        writes = [
            (CARRYOVERS_COLLECTION, r.id, {**r.to_dict(), "created_at": firestore.SERVER_TIMESTAMP})
            for r in records
        ]
        await self._commit(writes)

    async def write_semester_results(self, records: List[SemesterResultRecord]) -> None:
        writes = [
            (SEMESTER_RESULTS_COLLECTION, r.id, {**r.to_dict(), "computed_at": firestore.SERVER_TIMESTAMP})
            for r in records
        ]
        await self._commit(writes)


class FirestoreNotifier(_FirestoreRepository, Notifier):
    """Queues notifications as documents; delivery is handled elsewhere"""

    async def notify(self, recipient_id: Optional[str], type: str, title: str, message: str, data: Optional[dict] = None) -> None:
        notification = Notification(recipient_id=recipient_id, type=type, title=title, message=message, data=data or {})
        await self.db.collection(NOTIFICATIONS_COLLECTION).document().set(
            {**notification.to_dict(), "created_at": firestore.SERVER_TIMESTAMP}
        )


def build_repositories(db=None) -> Repositories:
    db = db or get_client()
    return Repositories(
        students=FirestoreStudentRepository(db),
        results=FirestoreResultRepository(db),
        registrations=FirestoreRegistrationRepository(db),
        terms=FirestoreTermRepository(db),
        departments=FirestoreDepartmentRepository(db),
        summaries=FirestoreSummaryRepository(db),
        master_runs=FirestoreMasterRunRepository(db),
        carryovers=FirestoreCarryoverRepository(db),
        sink=FirestoreBulkWriteSink(db),
        notifier=FirestoreNotifier(db),
    )
