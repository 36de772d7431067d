"""
Moteur de calcul des résultats académiques

Ce module contient toute la logique de calcul par département :
- Notes, points et moyennes (GPA / CGPA)
- Statut académique (probation, exclusion, suspension)
- Reports de cours (carry-overs)
- Agrégats par niveau et feuille maîtresse
"""
from app.computation.grading import GradeCalculator
from app.computation.rules import StandingPolicy

__all__ = ["GradeCalculator", "StandingPolicy"]
