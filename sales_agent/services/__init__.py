from sales_agent.services.command_executor import CommandExecutor, ExecutionReport
from sales_agent.services.debounce_service import DebounceBuffer, FlushInfo
from sales_agent.services.eligibility_service import (
    CheckEligibilityHandler,
    SystemOutageError,
    evaluate_results,
)
from sales_agent.services.enrichment_loop import EnrichmentLoop
from sales_agent.services.lock_service import KeyedSerialLock
from sales_agent.services.orchestrator import IncomingMessage, Orchestrator
from sales_agent.services.response_timing import calculate_response_delay, is_backlogged
