"""
Summary aggregator

Folds a ComputationContext into the persisted ComputationSummary:
level -> LevelSummary, department roll-up, department-wide lists and the
master-sheet data (key to courses, lists, MMS1 score grid, MMS2 progression).
"""
from typing import Any, Dict, List, Optional

from app.computation.constants import (
    ACADEMIC_STATUS_BY_REMARK,
    CLASSIFICATIONS,
    LEVELS,
    SUMMARY_LIST_LIMIT,
)
from app.computation.errors import AggregationShapeError
from app.computation.processor import ALL_LISTS, ComputationContext, LevelAggregate
from app.models.computation import (
    ComputationSummary,
    LevelStats,
    LevelSummary,
    MasterSheetLevel,
    StudentSummary,
)

# counters that must add up from levels to the department
SUMMED_COUNTERS = ("total_students", "students_with_results", "total_carryovers", "affected_students")


def _level_order(level: str):
    return (0, LEVELS.index(level)) if level in LEVELS else (1, level)


def build_level_summary(agg: LevelAggregate) -> LevelSummary:
    catalog = sorted(agg.catalog.values(), key=lambda c: (c.course_code, c.course_id))
    average = round(agg.total_gpa / agg.students_with_results, 2) if agg.students_with_results else 0.0
    return LevelSummary(
        level=agg.level,
        student_summaries=list(agg.summaries),
        course_catalog=catalog,
        pass_list=list(agg.pass_list),
        probation_list=list(agg.probation_list),
        withdrawal_list=list(agg.withdrawal_list),
        termination_list=list(agg.termination_list),
        suspension_list=list(agg.suspension_list),
        carryover_list=list(agg.carryover_list),
        stats=LevelStats(
            total_students=agg.total_students,
            students_with_results=agg.students_with_results,
            total_gpa=round(agg.total_gpa, 2),
            average_gpa=average,
            highest_gpa=agg.highest_gpa,
            lowest_gpa=agg.lowest_gpa or 0.0,
            total_carryovers=agg.total_carryovers,
            affected_students=agg.affected_students,
            failed_students=agg.failed_students,
            grade_distribution=dict(agg.grade_distribution),
        ),
    )


def _row(n: int, summary: StudentSummary) -> Dict[str, Any]:
    return {"s_n": n, "matric_no": summary.matric_number, "name": summary.name}


def build_master_sheet(level: LevelSummary) -> MasterSheetLevel:
    """Master-sheet data for one level"""
    by_id = {s.student_id: s for s in level.student_summaries}

    def rows(entries, extra) -> List[Dict[str, Any]]:
        out = []
        for n, entry in enumerate(entries, start=1):
            summary = by_id.get(entry.student_id)
            if summary is None:
                continue
            out.append({**_row(n, summary), **extra(summary)})
        return out

    pass_rows = rows(level.pass_list, lambda s: {"gpa": s.current.gpa, "cgpa": s.cumulative.gpa})

    def standing_extra(s):
        return {"cgpa": s.cumulative.gpa, "reason": s.reason}

    outstanding_rows = []
    n = 0
    for summary in level.student_summaries:
        failed = [c.course_code for c in summary.courses if c.failed]
        earlier = [c.course_code for c in summary.outstanding_courses]
        if not failed and not earlier:
            continue
        n += 1
        outstanding_rows.append({**_row(n, summary), "courses": failed, "outstanding": earlier})

    mms1 = []
    mms2 = []
    graded = [s for s in level.student_summaries if s.has_results]
    for n, summary in enumerate(graded, start=1):
        cells: Dict[str, Any] = {}
        taken = {c.course_id: c for c in summary.courses}
        for course in level.course_catalog:
            c = taken.get(course.course_id)
            if c is None:
                cells[course.course_code] = "-"
            else:
                cells[course.course_code] = {
                    "score": c.score,
                    "grade": c.grade,
                    "grade_point": c.grade_point,
                    "credit_point": c.credit_point,
                }
        mms1.append({
            **_row(n, summary),
            "courses": cells,
            "tcp": summary.current.tcp,
            "tnu": summary.current.tnu,
            "gpa": summary.current.gpa,
        })
        mms2.append({
            **_row(n, summary),
            "current": summary.current.model_dump(),
            "previous": summary.previous.model_dump(),
            "cumulative": summary.cumulative.model_dump(),
            "remark": summary.remark,
            "status": ACADEMIC_STATUS_BY_REMARK.get(summary.remark, summary.remark),
        })

    stats = level.stats
    return MasterSheetLevel(
        level=level.level,
        key_to_courses=list(level.course_catalog),
        pass_list=pass_rows,
        outstanding_courses_list=outstanding_rows,
        probation_list=rows(level.probation_list, standing_extra),
        withdrawal_list=rows(level.withdrawal_list, standing_extra),
        termination_list=rows(level.termination_list, standing_extra),
        suspension_list=rows(level.suspension_list, lambda s: {"reason": s.reason}),
        summary_of_results={
            "total_students": stats.total_students,
            "students_with_results": stats.students_with_results,
            "pass": len(level.pass_list),
            "probation": len(level.probation_list),
            "withdrawal": len(level.withdrawal_list),
            "termination": len(level.termination_list),
            "suspension": len(level.suspension_list),
            "carryover": len(level.carryover_list),
            "average_gpa": stats.average_gpa,
            "highest_gpa": stats.highest_gpa,
            "lowest_gpa": stats.lowest_gpa,
            "grade_distribution": dict(stats.grade_distribution),
        },
        mms1=mms1,
        mms2=mms2,
    )


def aggregate(
    context: ComputationContext,
    summary: ComputationSummary,
    list_limit: int = SUMMARY_LIST_LIMIT,
) -> ComputationSummary:
    """Fill `summary` from the context and check its shape"""
    levels = {
        level: build_level_summary(context.levels[level])
        for level in sorted(context.levels, key=_level_order)
    }

    summary.levels = levels
    summary.master_sheet_data_by_level = {level: build_master_sheet(ls) for level, ls in levels.items()}
    summary.failed_students = list(context.failed_students)
    summary.failed_students_count = len(context.failed_students)
    summary.students_processed = context.students_processed

    for name in SUMMED_COUNTERS:
        setattr(summary, name, sum(getattr(ls.stats, name) for ls in levels.values()))

    total_gpa = sum(ls.stats.total_gpa for ls in levels.values())
    summary.average_gpa = round(total_gpa / summary.students_with_results, 2) if summary.students_with_results else 0.0
    summary.highest_gpa = max((ls.stats.highest_gpa for ls in levels.values()), default=0.0)
    lows = [ls.stats.lowest_gpa for ls in levels.values() if ls.stats.lowest_gpa > 0]
    summary.lowest_gpa = min(lows) if lows else 0.0

    distribution = {c: 0 for c in CLASSIFICATIONS}
    for ls in levels.values():
        for label, count in ls.stats.grade_distribution.items():
            distribution[label] = distribution.get(label, 0) + count
    summary.grade_distribution = distribution

    summary.list_counts = {}
    for name in ALL_LISTS:
        combined = [entry for ls in levels.values() for entry in getattr(ls, name)]
        summary.list_counts[name] = len(combined)
        setattr(summary, name, combined[:list_limit])

    check_shape(summary)
    return summary


def check_shape(summary: ComputationSummary, expected_levels: Optional[List[str]] = None) -> None:
    """
    One LevelSummary per level, keyed by its own level, and level totals
    that add up to the department totals.
    """
    levels = summary.levels
    if not isinstance(levels, dict):
        raise AggregationShapeError("levels must be a mapping of level -> LevelSummary")

    for level in expected_levels or LEVELS:
        if level not in levels:
            raise AggregationShapeError(f"Missing level {level}", details={"level": level})

    for key, value in levels.items():
        if not isinstance(value, LevelSummary):
            raise AggregationShapeError(f"Level {key} is not a LevelSummary", details={"level": key})
        if value.level != key:
            raise AggregationShapeError(f"Level {key} holds data for level {value.level}", details={"level": key})
        for name in ALL_LISTS:
            if not isinstance(getattr(value, name), list):
                raise AggregationShapeError(f"Level {key} {name} is not a flat list", details={"level": key})
            if any(isinstance(item, list) for item in getattr(value, name)):
                raise AggregationShapeError(f"Level {key} {name} is nested", details={"level": key})

    for name in SUMMED_COUNTERS:
        level_total = sum(getattr(ls.stats, name) for ls in levels.values())
        if level_total != getattr(summary, name):
            raise AggregationShapeError(
                f"Level {name} ({level_total}) does not add up to department {name} ({getattr(summary, name)})",
                details={"counter": name},
            )

    for name in ALL_LISTS:
        level_total = sum(len(getattr(ls, name)) for ls in levels.values())
        if level_total != summary.list_counts.get(name, 0):
            raise AggregationShapeError(f"Level {name} counts do not add up", details={"list": name})

    if set(summary.master_sheet_data_by_level) != set(levels):
        raise AggregationShapeError("Master sheet levels differ from summary levels")
