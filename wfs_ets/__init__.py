# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Executable test suite for the stateful operations of WFS 2.0 services.

Verifies feature locking, result paging and stored query management against
a live service, tracking every lock and stored query it creates so they are
released when each check ends.
"""

import logging

from wfs_ets.builder import (
    ActionKind,
    ParameterSpec,
    Payload,
    QueryExpression,
    RequestBuilder,
    RequestParams,
    StoredQueryDefinition,
    StoredQueryInvocation,
    TransactionAction,
)
from wfs_ets.capabilities import CapabilitySet, FeatureTypeDescriptor, OperationInfo, TypeName
from wfs_ets.clock import Clock, SimulatedClock, SystemClock
from wfs_ets.config import VerifierConfig
from wfs_ets.context import FeatureSelector, VerificationContext
from wfs_ets.dispatch import BindingDispatcher, ResponseRecord
from wfs_ets.errors import (
    ExpiredCursor,
    MalformedRequest,
    PreconditionNotMet,
    ProtocolExceptionMismatch,
    ResourceLeakWarning,
    RunCancelled,
    SemanticAssertionFailure,
    ServiceException,
    StructuralValidationFailure,
    TransportFailure,
    VerificationError,
)
from wfs_ets.ledger import ResourceKind, ResourceLedger
from wfs_ets.locking import Lock, LockLifecycleModel, LockOutcome, LockState
from wfs_ets.paging import Direction, Page, PageCursor, PagingCursorWalker
from wfs_ets.protocol import (
    Binding,
    ConformanceClass,
    Constraint,
    ExceptionCode,
    LockAction,
    Operation,
    ReleaseAction,
    ResultType,
)
from wfs_ets.sampling import DataSampler, FeatureSamples
from wfs_ets.storedquery import StoredQuery, StoredQueryRegistry, StoredQueryState
from wfs_ets.validate import Predicate, ResponseValidator

__all__ = [
    "ActionKind",
    "Binding",
    "BindingDispatcher",
    "CapabilitySet",
    "Clock",
    "ConformanceClass",
    "Constraint",
    "DataSampler",
    "Direction",
    "ExceptionCode",
    "ExpiredCursor",
    "FeatureSamples",
    "FeatureSelector",
    "FeatureTypeDescriptor",
    "Lock",
    "LockAction",
    "LockLifecycleModel",
    "LockOutcome",
    "LockState",
    "MalformedRequest",
    "Operation",
    "OperationInfo",
    "Page",
    "PageCursor",
    "PagingCursorWalker",
    "ParameterSpec",
    "Payload",
    "Predicate",
    "PreconditionNotMet",
    "ProtocolExceptionMismatch",
    "QueryExpression",
    "ReleaseAction",
    "RequestBuilder",
    "RequestParams",
    "ResourceKind",
    "ResourceLeakWarning",
    "ResourceLedger",
    "ResponseRecord",
    "ResponseValidator",
    "ResultType",
    "RunCancelled",
    "SemanticAssertionFailure",
    "ServiceException",
    "SimulatedClock",
    "StoredQuery",
    "StoredQueryDefinition",
    "StoredQueryInvocation",
    "StoredQueryRegistry",
    "StoredQueryState",
    "StructuralValidationFailure",
    "SystemClock",
    "TransactionAction",
    "TransportFailure",
    "TypeName",
    "VerificationContext",
    "VerificationError",
    "VerifierConfig",
]

logging.getLogger("wfs_ets").addHandler(logging.NullHandler())
