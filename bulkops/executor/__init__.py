from .models import BatchProgress, BatchRun, OperationResult, Outcome
from .actions import (
    FEATURES,
    FeatureSpec,
    InjectionRule,
    PreparedCall,
    TemplateSpec,
    get_feature,
    list_features,
)
from .classify import SKIP_SIGNATURES, classify_failure
from .bulk import BulkExecutor, partition

__all__ = [
    "BatchProgress",
    "BatchRun",
    "OperationResult",
    "Outcome",
    "FEATURES",
    "FeatureSpec",
    "InjectionRule",
    "PreparedCall",
    "TemplateSpec",
    "get_feature",
    "list_features",
    "SKIP_SIGNATURES",
    "classify_failure",
    "BulkExecutor",
    "partition",
]
