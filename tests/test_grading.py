import pytest

from app.computation.errors import InvalidScoreError, PolicyConfigurationError
from app.computation.grading import GradeCalculator
from app.computation.rules import StandingPolicy
from app.models.computation import ResultRecord


def _result(course_id, score, unit, is_core=True):
    return ResultRecord(student_id="s1", course_id=course_id, term_id="t1", score=score,
                        course_code=course_id.upper(), unit=unit, is_core=is_core)


@pytest.mark.parametrize("score, grade, point", [
    (100, "A", 5), (70, "A", 5), (69.99, "B", 4), (60, "B", 4), (59, "C", 3), (50, "C", 3),
    (49, "D", 2), (45, "D", 2), (44.5, "E", 1), (40, "E", 1), (39.99, "F", 0), (0, "F", 0),
])
def test_grade_boundaries(score, grade, point):
    assert GradeCalculator().grade_and_point(score) == (grade, point)


@pytest.mark.parametrize("score", [-1, 100.01, "abc", None, True])
def test_invalid_scores_are_rejected(score):
    with pytest.raises(InvalidScoreError):
        GradeCalculator().grade_and_point(score)


def test_grade_table_is_single_edit_point():
    calc = GradeCalculator(grade_scale=[(50.0, "P", 1), (0.0, "F", 0)])
    assert calc.grade_and_point(55) == ("P", 1)
    assert calc.grade_and_point(49) == ("F", 0)


def test_semester_gpa():
    calc = GradeCalculator()
    semester = calc.semester_gpa([_result("c1", 75, 3), _result("c2", 55, 2), _result("c3", 30, 1)])
    # 5*3 + 3*2 + 0*1 = 21 over 6 units
    assert semester.tcp == 21
    assert semester.tnu == 6
    assert semester.gpa == 3.5
    assert [c.course_id for c in semester.failed_courses] == ["c3"]
    assert semester.courses[0].credit_point == 15


def test_semester_gpa_rounds_to_two_decimals():
    semester = GradeCalculator().semester_gpa([_result("c1", 75, 1), _result("c2", 65, 1), _result("c3", 65, 1)])
    assert semester.gpa == 4.33


def test_semester_gpa_without_units_is_zero():
    assert GradeCalculator().semester_gpa([]).gpa == 0.0
    assert GradeCalculator().semester_gpa([_result("c1", 80, 0)]).gpa == 0.0


def test_cgpa_combines_previous_and_current():
    assert GradeCalculator.cgpa(40, 10, 15, 5) == 3.67


def test_cgpa_falls_back_to_last_known():
    assert GradeCalculator.cgpa(0, 0, 0, 0, last_known_cgpa=3.21) == 3.21


def test_cgpa_folded_term_by_term_matches_one_pass():
    calc = GradeCalculator()
    terms = [
        [_result("c1", 75, 3), _result("c2", 55, 2)],
        [_result("c3", 30, 4), _result("c4", 62, 3)],
        [_result("c5", 48, 2)],
    ]
    tcp = tnu = 0
    cgpa = 0.0
    for results in terms:
        semester = calc.semester_gpa(results)
        cgpa = calc.cgpa(tcp, tnu, semester.tcp, semester.tnu, cgpa)
        tcp += semester.tcp
        tnu += semester.tnu

    # 37 over 14 units
    assert (tcp, tnu) == (37, 14)
    assert cgpa == calc.semester_gpa([r for results in terms for r in results]).gpa == 2.64


@pytest.mark.parametrize("gpa, label", [
    (5.0, "firstClass"), (4.5, "firstClass"), (4.49, "secondClassUpper"), (3.5, "secondClassUpper"),
    (2.4, "secondClassLower"), (1.5, "thirdClass"), (1.49, "fail"), (0.0, "fail"),
])
def test_classification(gpa, label):
    assert GradeCalculator().classification(gpa) == label


def test_borrowed_course_resolves_to_origin():
    record = ResultRecord(
        student_id="s1", course_id="local", term_id="t1", score=65, course_code="LOC101", unit=2,
        borrowed_course_id="origin", borrowed_course_code="MTH101", borrowed_course_title="Maths", borrowed_unit=3,
    )
    course = GradeCalculator().grade_course(record.resolved())
    assert (course.course_id, course.course_code, course.unit) == ("origin", "MTH101", 3)
    assert course.credit_point == 12


def test_default_policy_is_valid():
    policy = StandingPolicy.get_default_policy()
    assert policy.validate_policy() is policy


def test_inconsistent_policy_lists_every_problem():
    policy = StandingPolicy(withdrawal_cgpa=2.0, grade_scale=[(40.0, "P", 1), (50.0, "A", 5)])
    with pytest.raises(PolicyConfigurationError) as exc:
        policy.validate_policy()
    assert len(exc.value.details) >= 3
    assert exc.value.retriable is False


def test_policy_rejects_probation_cutoff_above_excellence():
    with pytest.raises(PolicyConfigurationError) as exc:
        StandingPolicy(probation_cgpa=4.5).validate_policy()
    assert exc.value.details == ["expected probation_cgpa <= excellent_cgpa <= 5.0"]
