import pytest

from tests.fakes import FakeBulkWriteSink, FakeStore, RecordingNotifier


def build_department(store: FakeStore, department_id: str = "d1", term_id: str = "t1"):
    """
    One department, one active term, two core courses per level 100/200
    and a 2-unit elective at level 100.
    """
    store.add_department(department_id, name=f"Department {department_id}")
    store.add_term(term_id, department_id)
    store.add_course(f"{department_id}-c101", "CSC101", unit=4, level="100", department_id=department_id)
    store.add_course(f"{department_id}-c102", "CSC102", unit=3, level="100", department_id=department_id)
    store.add_course(f"{department_id}-e103", "GST103", unit=2, level="100", department_id=department_id,
                     is_core=False)
    store.add_course(f"{department_id}-c201", "CSC201", unit=3, level="200", department_id=department_id)
    store.add_course(f"{department_id}-c202", "CSC202", unit=3, level="200", department_id=department_id)
    return store


def enroll(store: FakeStore, student_id: str, scores: dict, department_id: str = "d1", term_id: str = "t1",
           level: str = "100", registered: bool = True, **kw):
    """Add a student with results; `scores` maps course id suffix (c101, ...) to score"""
    store.add_student(student_id, department_id=department_id, level=level, **kw)
    if registered:
        store.register(student_id, term_id)
    for suffix, score in scores.items():
        store.add_result(student_id, f"{department_id}-{suffix}", term_id, score)


@pytest.fixture
def store():
    return build_department(FakeStore())


@pytest.fixture
def sink(store):
    return FakeBulkWriteSink(store)


@pytest.fixture
def notifier(store):
    return RecordingNotifier(store)


@pytest.fixture
def repos(store, sink, notifier):
    return store.repositories(sink=sink, notifier=notifier)
