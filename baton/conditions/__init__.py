"""Step precondition evaluation."""

from .custom import check_query_safety, evaluate_expression
from .evaluator import ConditionContext, ConditionEvaluator
from .git import GitClient, GitStatus, StaticGitClient, SubprocessGitClient
from .result import ConditionResult, ConditionValidation

__all__ = [
    "ConditionContext",
    "ConditionEvaluator",
    "ConditionResult",
    "ConditionValidation",
    "GitClient",
    "GitStatus",
    "StaticGitClient",
    "SubprocessGitClient",
    "check_query_safety",
    "evaluate_expression",
]
