"""
Digests sent to department heads and shown to administrators
"""
from typing import Any, Dict, List, Optional

from app.models.computation import ComputationSummary, Department, MasterComputationRun, Term


def _term_name(term: Optional[Term]) -> str:
    if term is None:
        return ""
    return (term.name or term.id or "").capitalize()


def build_department_digest(department: Department, term: Optional[Term], summary: ComputationSummary) -> str:
    """Level-by-level text digest for the head of department"""
    counts = summary.list_counts
    lines = [
        f"RESULTS COMPUTATION COMPLETE - {department.name}",
        f"{_term_name(term)} Semester",
        f"Processed: {summary.students_with_results}/{summary.total_students} students",
        f"Average GPA: {summary.average_gpa:.2f}",
        "",
        "STUDENT LISTS:",
        f"Passed: {counts.get('pass_list', 0)} students",
        f"Probation: {counts.get('probation_list', 0)} students",
        f"Withdrawal: {counts.get('withdrawal_list', 0)} students",
        f"Termination: {counts.get('termination_list', 0)} students",
        f"Suspension: {counts.get('suspension_list', 0)} students",
        "",
        "CARRYOVER ANALYSIS:",
        f"Total Carryovers: {summary.total_carryovers}",
        f"Affected Students: {summary.affected_students}",
        "",
        "BY LEVEL:",
    ]
    for level, ls in summary.levels.items():
        if not ls.stats.total_students:
            continue
        lines.append(
            f"{level}L: {ls.stats.total_students} students, avg GPA {ls.stats.average_gpa:.2f}, "
            f"pass {len(ls.pass_list)}, probation {len(ls.probation_list)}, "
            f"withdrawal {len(ls.withdrawal_list)}, termination {len(ls.termination_list)}, "
            f"carryovers {ls.stats.total_carryovers}"
        )

    failed = summary.failed_students_count
    lines.append("")
    lines.append(f"FAILED PROCESSING: {failed}")
    lines.append("Check dashboard for details" if failed else "All students processed successfully")
    return "\n".join(lines)


def build_failure_digest(department: Department, term: Optional[Term], error_message: str) -> str:
    return (
        f"RESULTS COMPUTATION FAILED - {department.name}\n"
        f"{_term_name(term)} Semester\n"
        f"Reason: {error_message}\n"
        "The term has not been locked. Contact the administrator to retry."
    )


def recommendations(summary: ComputationSummary) -> List[Dict[str, str]]:
    out = []
    total = summary.total_students or 1
    counts = summary.list_counts

    probation_rate = counts.get("probation_list", 0) / total
    if probation_rate > 0.10:
        out.append({
            "priority": "high",
            "title": "High Probation Rate",
            "description": f"{counts.get('probation_list', 0)} students ({probation_rate:.1%}) are on probation.",
        })

    carryover_rate = summary.affected_students / total
    if carryover_rate > 0.15:
        out.append({
            "priority": "high",
            "title": "High Carryover Rate",
            "description": f"{summary.affected_students} students ({carryover_rate:.1%}) have carryover courses.",
        })

    critical = counts.get("withdrawal_list", 0) + counts.get("termination_list", 0)
    if critical / total > 0.05:
        out.append({
            "priority": "critical",
            "title": "High Student Attrition",
            "description": f"{critical} students ({critical / total:.1%}) have been withdrawn or terminated.",
        })

    if summary.students_with_results and summary.average_gpa < 2.5:
        out.append({
            "priority": "medium",
            "title": "Below Average Performance",
            "description": f"Department average GPA is {summary.average_gpa:.2f}.",
        })
    return out


def build_admin_digest(run: MasterComputationRun, summaries: List[ComputationSummary]) -> Dict[str, Any]:
    """Run-level overview for the status endpoint"""
    departments = []
    for summary in summaries:
        departments.append({
            "department_id": summary.department_id,
            "department_name": summary.department_name,
            "summary_id": summary.id,
            "status": summary.status,
            "students_processed": summary.students_processed,
            "average_gpa": summary.average_gpa,
            "failed_students": summary.failed_students_count,
            "list_counts": dict(summary.list_counts),
            "term_locked": summary.term_locked,
            "error_message": summary.error_message,
            "recommendations": recommendations(summary),
        })

    return {
        "master_run_id": run.id,
        "status": run.status,
        "purpose": run.purpose,
        "is_preview": run.is_preview,
        "total_departments": run.total_departments,
        "departments_processed": run.departments_processed,
        "departments_failed": run.departments_failed,
        "departments_cancelled": run.departments_cancelled,
        "students_processed": sum(d["students_processed"] for d in departments),
        "departments": departments,
    }
