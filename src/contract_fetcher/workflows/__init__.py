"""High-level exports for the contract acquisition workflows."""

from .acquire import AcquireResult, ContractFetcher, DocumentHandle, FetchRequest
from .blob_store import BlobStore, CachedBlob, MemoryBlobStore, SqliteBlobStore
from .contract_cache import ContractCache, format_cache_size, open_contract_cache
from .eligibility import EligibleField, GlossaryEntry, glossary_from_records, select_fields
from .failure_classifier import (
    FailureRecord,
    FailureSignals,
    build_review_comment,
    classify_failure,
    override_category,
    preflight_contract_urls,
)
from .fetch_config import PipelineSettings, load_settings_from_env
from .readability import ReadabilityVerdict, evaluate

__all__ = [
    "AcquireResult",
    "BlobStore",
    "CachedBlob",
    "ContractCache",
    "ContractFetcher",
    "DocumentHandle",
    "EligibleField",
    "FailureRecord",
    "FailureSignals",
    "FetchRequest",
    "GlossaryEntry",
    "MemoryBlobStore",
    "PipelineSettings",
    "ReadabilityVerdict",
    "SqliteBlobStore",
    "build_review_comment",
    "classify_failure",
    "evaluate",
    "format_cache_size",
    "glossary_from_records",
    "load_settings_from_env",
    "open_contract_cache",
    "override_category",
    "preflight_contract_urls",
    "select_fields",
]
