from conductor.specialists.base import SpecialistAgent, SpecialistResponse
from conductor.specialists.bean_counter import BeanCounterAgent
from conductor.specialists.coder import CoderAgent
from conductor.specialists.curmudgeon import CurmudgeonAgent
from conductor.specialists.planner import PlannerAgent
from conductor.specialists.refiner import RefinerAgent
from conductor.specialists.reviewer import ReviewerAgent
from conductor.specialists.super_reviewer import SuperReviewerAgent

__all__ = [
    "BeanCounterAgent",
    "CoderAgent",
    "CurmudgeonAgent",
    "PlannerAgent",
    "RefinerAgent",
    "ReviewerAgent",
    "SpecialistAgent",
    "SpecialistResponse",
    "SuperReviewerAgent",
]
