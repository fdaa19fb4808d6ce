"""
modelgate - Pick the right model and get the request through.

Choosing a model:
    from modelgate import Broker

    broker = Broker()
    result = await broker.choose(
        ["gpt-5-mini:flex", "gpt-4.1-mini:standard"],
        policy="cheapest",
    )
    print(result.chosen_model_spec)       # "gpt-5-mini:flex"
    print(result.decision.reason.value)   # "MIN_COST"

Running a request (chooses, gates, records, retries):
    broker = Broker.with_openai()
    response = await broker.execute("Translate: hello", tenant_key="tab-1", job_id="job-1")
    print(response.model_spec, response.attempts)

Fair job dispatch across tenants:
    queue = broker.services.queue
    await queue.enqueue("job-2", tenant_key="tab-2", priority=10)
    entry = await queue.dequeue_next(active_tenant_key="tab-1")

Crash recovery:
    report = await broker.sweep()
    print(report.adopted, report.requeued, report.failed)
"""

from modelgate.broker import Broker, BrokerResponse, NoModelsError, Services, build_services
from modelgate.config import BrokerConfig
from modelgate.chooser import ModelChooser, normalize_policy
from modelgate.registry import ModelRegistry, build_registry, parse_model_spec, format_model_spec
from modelgate.capability import HeuristicCapabilityRank, NullCapabilityOracle
from modelgate.diagnostics import EventLog, DiagnosticEvent
from modelgate.inflight import InflightLedger, InflightSweeper, deterministic_request_id
from modelgate.job_queue import JobQueue
from modelgate.rate_limiter import TokenBucketLimiter, RateLimitError
from modelgate.retry_policy import (
    RequestFailedError,
    RequestCancelledError,
    RetryLoop,
    classify_error,
    compute_backoff_ms,
    should_retry,
)
from modelgate.schemas import (
    ChooserResult,
    ClassifiedError,
    DecisionReason,
    ErrorKind,
    ModelTier,
    PersistResult,
    SelectionPolicy,
)
from modelgate.storage import InMemoryKeyValueStore, SQLiteKeyValueStore, NullKeyValueStore, StorageError
from modelgate.transport import MockTransport, OpenAITransport, Transport, TransportError, TransportRequest, TransportResponse


__version__ = "0.1.0"
