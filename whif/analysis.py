"""Analysis entry point: balance check, pipeline run, usage debit.

    state = await run_analysis("Build free public transit", user_id="u1")

``AnalysisService`` is the same flow over injected collaborators.
"""

import logging
import uuid

from .config import WhifConfig, get_config
from .core.cost.ledger import BalanceLedger
from .core.cost.metering import UsageMeter
from .core.errors import InsufficientBalanceError
from .core.invocation import ModelRequest, ProviderFactory, RetryOptions, call_with_retry
from .core.tracing import JsonFileTraceSink, TraceSink
from .pipeline.orchestrator import PipelineOrchestrator
from .pipeline.stages import StageContext
from .pipeline.state import AnalysisState
from .storage.ledger_db import LedgerDB, open_ledger_db
from .storage.repositories import UsageRepository

logger = logging.getLogger(__name__)


class AnalysisService:
    """Runs analyses for users against a ledger and a usage store.

    Args:
        ledger: Balance ledger consulted before and debited after each run.
        usage_repository: Receives one usage record per model call attempt.
        config: Model routing, retry budget and ledger amounts.
        provider_factory: Model name -> provider (defaults to the registry).
        trace_sink: Optional per-attempt trace receiver.
    """

    def __init__(
        self,
        ledger: BalanceLedger,
        usage_repository: UsageRepository | None,
        config: WhifConfig | None = None,
        *,
        provider_factory: ProviderFactory | None = None,
        trace_sink: TraceSink | None = None,
    ) -> None:
        self.ledger = ledger
        self.usage_repository = usage_repository
        self.config = config or get_config()
        self.provider_factory = provider_factory
        self.trace_sink = trace_sink

    @classmethod
    def from_db(
        cls,
        db: LedgerDB,
        config: WhifConfig | None = None,
        **kwargs,
    ) -> "AnalysisService":
        config = config or get_config()
        ledger = BalanceLedger(
            db.balances,
            db.transactions,
            initial_allowance=config.ledger.initial_allowance_amount,
        )
        return cls(ledger, db.usage, config, **kwargs)

    async def run_analysis(
        self,
        proposal_text: str,
        user_id: str,
        analysis_id: str | None = None,
    ) -> AnalysisState:
        """Run the full pipeline for one proposal.

        Raises:
            InsufficientBalanceError: The balance does not cover the
                estimated cost; no model is called.
            ProviderError: A stage failed; nothing is debited.
            LedgerPersistenceError: The ledger could not be read or written.
        """
        analysis_id = analysis_id or str(uuid.uuid4())
        estimated = self.config.ledger.estimated_cost_amount

        if not await self.ledger.has_sufficient_balance(user_id, estimated):
            balance = await self.ledger.get_balance(user_id)
            raise InsufficientBalanceError(user_id, estimated, balance.balance)

        meter = UsageMeter(
            self.usage_repository, analysis_id=analysis_id, user_id=user_id
        )
        options = RetryOptions.from_config(self.config.retry)

        async def invoke(request: ModelRequest, models: list[str]):
            return await call_with_retry(
                request,
                models,
                options,
                provider_factory=self.provider_factory,
                meter=meter,
                trace_sink=self.trace_sink,
            )

        context = StageContext(
            invoke=invoke,
            models=self.config.models,
            max_concurrency=self.config.pipeline.max_concurrency,
        )
        initial = AnalysisState(
            proposal_text=proposal_text,
            analysis_id=analysis_id,
            user_id=user_id,
        )

        logger.info(f"[analysis] {analysis_id}: starting for user {user_id}")
        try:
            final = await PipelineOrchestrator(context).run(initial)
        finally:
            await meter.drain()

        cost = meter.total_cost
        debited = await self.ledger.deduct_cost(
            user_id,
            cost,
            reference_id=analysis_id,
            description=f"Analysis {analysis_id}",
        )
        if not debited:
            logger.error(
                f"[analysis] {analysis_id}: cost {cost} exceeds the balance of "
                f"{user_id}; result returned without debit"
            )
        else:
            logger.info(f"[analysis] {analysis_id}: completed, cost {cost}")
        return final


async def run_analysis(
    proposal_text: str,
    user_id: str,
    analysis_id: str | None = None,
    *,
    config: WhifConfig | None = None,
) -> AnalysisState:
    """Run an analysis against the configured SQLite store."""
    from .core.providers import close_providers

    config = config or get_config()
    trace_sink = (
        JsonFileTraceSink(config.tracing.log_dir) if config.tracing.enabled else None
    )
    with open_ledger_db(config.db_path_resolved) as db:
        service = AnalysisService.from_db(db, config, trace_sink=trace_sink)
        try:
            return await service.run_analysis(proposal_text, user_id, analysis_id)
        finally:
            if trace_sink is not None:
                await trace_sink.drain()
            await close_providers()
