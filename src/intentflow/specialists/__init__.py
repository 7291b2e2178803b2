from intentflow.specialists.analyzer import AnalyzerAgent
from intentflow.specialists.auditor import AuditorAgent
from intentflow.specialists.base import SpecialistAgent, SpecialistResponse
from intentflow.specialists.implementer import ImplementerAgent
from intentflow.specialists.reflector import ReflectorAgent
from intentflow.specialists.reporter import ReporterAgent
from intentflow.specialists.reviewer import ReviewerAgent

__all__ = [
    "AnalyzerAgent",
    "AuditorAgent",
    "ImplementerAgent",
    "ReflectorAgent",
    "ReporterAgent",
    "ReviewerAgent",
    "SpecialistAgent",
    "SpecialistResponse",
]
