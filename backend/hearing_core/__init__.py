from .analyzer import ProfileAnalyzer
from .executor import ActionExecutor, ActionRejected, apply_action
from .hearing_agent import build_turn_prompt, parse_turn_response
from .lifecycle import LifecycleError, SessionLifecycle, SessionStart
from .llm import CompletionClient, CompletionUnavailable, HttpCompletionClient
from .models import (
    AnalysisResult,
    EditorResult,
    ExecutionReport,
    ExtractedData,
    ExtractedFact,
    HearingTurn,
    MissingQuestion,
    ProfileAction,
    ProfileIssue,
    Question,
    Section,
    StageOutcome,
    TurnResult,
)
from .pipeline import HearingPipeline
from .policy import ConfidencePolicy, PolicyDecision
from .profile_editor import ProfileEditor
from .question_bank import QuestionBank, load_question_bank, question_bank_from_env
from .settings import PipelineSettings

__all__ = [
    "ActionExecutor",
    "ActionRejected",
    "AnalysisResult",
    "CompletionClient",
    "CompletionUnavailable",
    "ConfidencePolicy",
    "EditorResult",
    "ExecutionReport",
    "ExtractedData",
    "ExtractedFact",
    "HearingPipeline",
    "HearingTurn",
    "HttpCompletionClient",
    "LifecycleError",
    "MissingQuestion",
    "PipelineSettings",
    "PolicyDecision",
    "ProfileAction",
    "ProfileAnalyzer",
    "ProfileEditor",
    "ProfileIssue",
    "Question",
    "QuestionBank",
    "Section",
    "SessionLifecycle",
    "SessionStart",
    "StageOutcome",
    "TurnResult",
    "apply_action",
    "build_turn_prompt",
    "load_question_bank",
    "parse_turn_response",
    "question_bank_from_env",
]
