"""Tests for the analysis pipeline: state merging, stages, orchestrator, service."""

import asyncio
from decimal import Decimal

import pytest

from whif.analysis import AnalysisService
from whif.config import LedgerConfig, WhifConfig, StageModels
from whif.core.cost.ledger import BalanceLedger
from whif.core.errors import (
    InsufficientBalanceError,
    PermanentProviderError,
    StageOutputError,
)
from whif.pipeline.orchestrator import PipelineOrchestrator
from whif.pipeline.stages import (
    UNCATEGORIZED,
    StageContext,
    categorize_impacts,
    extract_statements,
    generate_downstream_impacts,
    partition_impacts,
    research_and_evaluate,
    summarize_findings,
)
from whif.pipeline.state import (
    AnalysisState,
    CategorizeUpdate,
    DownstreamUpdate,
    EvaluateUpdate,
    ExtractUpdate,
    SummarizeUpdate,
    apply_update,
)
from whif.storage.memory import (
    InMemoryBalanceRepository,
    InMemoryBalanceTransactionRepository,
    InMemoryUsageRepository,
)


def _state(**kwargs) -> AnalysisState:
    base = dict(proposal_text="Build free public transit", analysis_id="a1", user_id="u1")
    base.update(kwargs)
    return AnalysisState(**base)


class ScriptedInvoker:
    """Invoker that answers by call-site name. Values may be callables of the request."""

    def __init__(self, answers: dict):
        self.answers = answers
        self.requests = []

    async def __call__(self, request, models):
        self.requests.append((request, list(models)))
        answer = self.answers[request.name]
        if callable(answer):
            answer = answer(request)
        if asyncio.iscoroutine(answer):
            answer = await answer
        if isinstance(answer, Exception):
            raise answer
        return answer


def _ctx(answers: dict, max_concurrency: int = 8):
    invoker = ScriptedInvoker(answers)
    ctx = StageContext(
        invoke=invoker, models=StageModels(), max_concurrency=max_concurrency
    )
    return ctx, invoker


def _statement_of(request) -> str:
    return request.prompt.text.rsplit("Input impact statement: ", 1)[1].strip()


# =============================================================================
# State
# =============================================================================


class TestApplyUpdate:
    def test_returns_new_state(self):
        state = _state()
        new = apply_update(state, ExtractUpdate(extracted_statements=["a", "b"]))

        assert new.extracted_statements == ["a", "b"]
        assert state.extracted_statements == []
        assert new.proposal_text == state.proposal_text

    def test_each_update_touches_only_its_fields(self):
        state = _state(extracted_statements=["s"])
        state = apply_update(state, DownstreamUpdate(downstream_impacts=["i1", "i2"]))
        state = apply_update(state, CategorizeUpdate(grouped_categories={"Econ": ["i1", "i2"]}))
        state = apply_update(
            state,
            EvaluateUpdate(research_findings={"Econ": "data"}, evaluated_scores={"Econ": 0.2}),
        )
        state = apply_update(state, SummarizeUpdate(final_summary="## Done"))

        assert state.extracted_statements == ["s"]
        assert state.downstream_impacts == ["i1", "i2"]
        assert state.grouped_categories == {"Econ": ["i1", "i2"]}
        assert state.research_findings == {"Econ": "data"}
        assert state.evaluated_scores == {"Econ": 0.2}
        assert state.final_summary == "## Done"

    def test_state_does_not_alias_update(self):
        update = ExtractUpdate(extracted_statements=["a"])
        state = apply_update(_state(), update)
        update.extracted_statements.append("b")
        assert state.extracted_statements == ["a"]

    def test_unknown_update_rejected(self):
        with pytest.raises(TypeError):
            apply_update(_state(), {"stage": "extract"})

    def test_state_is_frozen(self):
        with pytest.raises(Exception):
            _state().final_summary = "x"


# =============================================================================
# Stages
# =============================================================================


class TestExtract:
    def test_strips_and_drops_blank_statements(self):
        ctx, invoker = _ctx({"extract_statements": {"statements": [" a ", "", "  ", "b"]}})

        update = asyncio.run(extract_statements(_state(), ctx))

        assert update.extracted_statements == ["a", "b"]
        request, models = invoker.requests[0]
        assert "Build free public transit" in request.prompt.text
        assert request.prompt.response_schema is not None
        assert models == StageModels().extract.candidates

    def test_no_statements_is_an_error(self):
        ctx, _ = _ctx({"extract_statements": {"statements": []}})
        with pytest.raises(StageOutputError):
            asyncio.run(extract_statements(_state(), ctx))

    def test_malformed_response_is_an_error(self):
        ctx, _ = _ctx({"extract_statements": {"items": ["a"]}})
        with pytest.raises(StageOutputError):
            asyncio.run(extract_statements(_state(), ctx))


class TestDownstream:
    def test_results_follow_statement_order(self):
        statements = ["s0", "s1", "s2", "s3"]

        async def slow_first(request):
            statement = _statement_of(request)
            index = statements.index(statement)
            await asyncio.sleep(0.01 * (len(statements) - index))
            return {"impacts": [f"{statement}-a", f"{statement}-b"]}

        ctx, _ = _ctx({"downstream_impacts": slow_first})
        update = asyncio.run(
            generate_downstream_impacts(_state(extracted_statements=statements), ctx)
        )

        assert update.downstream_impacts == [
            impact for s in statements for impact in (f"{s}-a", f"{s}-b")
        ]

    def test_concurrency_is_bounded(self):
        in_flight = 0
        peak = 0

        async def track(request):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return {"impacts": ["x"]}

        ctx, invoker = _ctx({"downstream_impacts": track}, max_concurrency=2)
        asyncio.run(
            generate_downstream_impacts(
                _state(extracted_statements=[f"s{i}" for i in range(6)]), ctx
            )
        )

        assert len(invoker.requests) == 6
        assert peak == 2

    def test_failure_cancels_siblings(self):
        cancelled = []

        async def answer(request):
            statement = _statement_of(request)
            if statement == "bad":
                await asyncio.sleep(0.01)
                raise PermanentProviderError("invalid request", status_code=400)
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.append(statement)
                raise
            return {"impacts": ["never"]}

        ctx, _ = _ctx({"downstream_impacts": answer})
        with pytest.raises(PermanentProviderError):
            asyncio.run(
                generate_downstream_impacts(
                    _state(extracted_statements=["slow1", "bad", "slow2"]), ctx
                )
            )

        assert sorted(cancelled) == ["slow1", "slow2"]

    def test_statement_without_impacts_is_an_error(self):
        ctx, _ = _ctx({"downstream_impacts": {"impacts": []}})
        with pytest.raises(StageOutputError):
            asyncio.run(
                generate_downstream_impacts(_state(extracted_statements=["s"]), ctx)
            )


class TestPartitionImpacts:
    def test_exact_partition_is_kept(self):
        grouped = partition_impacts(
            ["a", "b", "c"], [("Econ", ["a", "c"]), ("Social", ["b"])]
        )
        assert grouped == {"Econ": ["a", "c"], "Social": ["b"]}

    def test_invented_and_duplicate_entries_removed(self, caplog):
        with caplog.at_level("WARNING"):
            grouped = partition_impacts(
                ["a", "b"], [("Econ", ["a", "a", "zzz"]), ("Social", ["b", "a"])]
            )
        assert grouped == {"Econ": ["a"], "Social": ["b"]}
        assert "Repaired categorization" in caplog.text

    def test_missing_impacts_go_to_uncategorized(self):
        grouped = partition_impacts(["a", "b", "c"], [("Econ", ["b"])])
        assert grouped == {"Econ": ["b"], UNCATEGORIZED: ["a", "c"]}

    def test_repeated_impacts_are_counted(self):
        grouped = partition_impacts(["a", "a", "b"], [("X", ["a", "a", "a"])])
        assert grouped == {"X": ["a", "a"], UNCATEGORIZED: ["b"]}

    def test_empty_categories_omitted_and_blank_names_uncategorized(self):
        grouped = partition_impacts(["a", "b"], [("Empty", []), ("  ", ["a"]), ("Y", ["b"])])
        assert grouped == {UNCATEGORIZED: ["a"], "Y": ["b"]}


class TestCategorize:
    def test_groups_are_a_partition(self):
        impacts = ["cheaper commute", "more riders", "fewer cars"]
        ctx, _ = _ctx(
            {
                "categorize_impacts": {
                    "categories": [
                        {"name": "Economic", "impacts": ["cheaper commute", "made up"]},
                        {"name": "Environmental", "impacts": [" fewer cars "]},
                        "not a category",
                    ]
                }
            }
        )

        update = asyncio.run(categorize_impacts(_state(downstream_impacts=impacts), ctx))

        assert update.grouped_categories == {
            "Economic": ["cheaper commute"],
            "Environmental": ["fewer cars"],
            UNCATEGORIZED: ["more riders"],
        }

    def test_malformed_response_is_an_error(self):
        ctx, _ = _ctx({"categorize_impacts": {"Economic": ["a"]}})
        with pytest.raises(StageOutputError):
            asyncio.run(categorize_impacts(_state(downstream_impacts=["a"]), ctx))


class TestEvaluate:
    def _run(self, score, research="Ridership rose 12%."):
        ctx, invoker = _ctx(
            {"research_category": research, "evaluate_category": {"score": score}}
        )
        state = _state(grouped_categories={"Economic": ["a"], "Social": ["b"]})
        return asyncio.run(research_and_evaluate(state, ctx)), invoker

    def test_research_then_score_per_category(self):
        update, invoker = self._run(0.4)

        assert update.research_findings == {
            "Economic": "Ridership rose 12%.",
            "Social": "Ridership rose 12%.",
        }
        assert update.evaluated_scores == {"Economic": 0.4, "Social": 0.4}
        assert [r.name for r, _ in invoker.requests] == [
            "research_category",
            "evaluate_category",
            "research_category",
            "evaluate_category",
        ]
        research_request = invoker.requests[0][0]
        assert research_request.prompt.response_schema is None

    @pytest.mark.parametrize("raw,expected", [(1.7, 1.0), (-3, -1.0), (0, 0.0)])
    def test_scores_clamped(self, raw, expected):
        update, _ = self._run(raw)
        assert update.evaluated_scores["Economic"] == expected

    @pytest.mark.parametrize("raw", ["high", True, None, float("nan")])
    def test_non_numeric_score_is_an_error(self, raw):
        with pytest.raises(StageOutputError):
            self._run(raw)

    def test_empty_research_is_an_error(self):
        with pytest.raises(StageOutputError):
            self._run(0.5, research="   ")


class TestSummarize:
    def test_summary_uses_scores_and_findings(self):
        ctx, invoker = _ctx({"summarize_findings": {"summary": "  ## Verdict\nProceed.  "}})
        state = _state(evaluated_scores={"Economic": 0.5}, research_findings={"Economic": "data"})

        update = asyncio.run(summarize_findings(state, ctx))

        assert update.final_summary == "## Verdict\nProceed."
        prompt = invoker.requests[0][0].prompt.text
        assert '"Economic": 0.5' in prompt
        assert "Build free public transit" in prompt

    def test_empty_summary_is_an_error(self):
        ctx, _ = _ctx({"summarize_findings": {"summary": ""}})
        with pytest.raises(StageOutputError):
            asyncio.run(summarize_findings(_state(), ctx))


# =============================================================================
# Orchestrator
# =============================================================================


class TestOrchestrator:
    def test_runs_stages_in_order(self):
        seen = []

        def stage(name, update):
            async def run(state, ctx):
                seen.append((name, list(state.extracted_statements)))
                return update

            return name, run

        stages = (
            stage("extract", ExtractUpdate(extracted_statements=["s"])),
            stage("summarize", SummarizeUpdate(final_summary="done")),
        )
        ctx, _ = _ctx({})
        final = asyncio.run(PipelineOrchestrator(ctx, stages).run(_state()))

        assert seen == [("extract", []), ("summarize", ["s"])]
        assert final.final_summary == "done"

    def test_failure_stops_the_chain(self, caplog):
        called = []

        async def ok(state, ctx):
            called.append("extract")
            return ExtractUpdate(extracted_statements=["s"])

        async def boom(state, ctx):
            called.append("downstream")
            raise StageOutputError("no impacts")

        async def never(state, ctx):
            called.append("categorize")
            return CategorizeUpdate(grouped_categories={})

        ctx, _ = _ctx({})
        orchestrator = PipelineOrchestrator(
            ctx, (("extract", ok), ("downstream", boom), ("categorize", never))
        )

        with caplog.at_level("ERROR"), pytest.raises(StageOutputError, match="no impacts"):
            asyncio.run(orchestrator.run(_state()))

        assert called == ["extract", "downstream"]
        assert "stage downstream failed" in caplog.text


# =============================================================================
# AnalysisService end to end
# =============================================================================


def _service(provider, config=None):
    config = config or WhifConfig()
    usage = InMemoryUsageRepository()
    ledger = BalanceLedger(
        InMemoryBalanceRepository(),
        InMemoryBalanceTransactionRepository(),
        initial_allowance=config.ledger.initial_allowance_amount,
    )
    service = AnalysisService(
        ledger, usage, config, provider_factory=lambda model: provider
    )
    return service, ledger, usage


class TestAnalysisService:
    def test_full_run(self, fake_provider_cls):
        provider = fake_provider_cls()
        service, ledger, usage = _service(provider)

        state = asyncio.run(
            service.run_analysis("Build free public transit", "u1", analysis_id="run-1")
        )

        assert state.analysis_id == "run-1"
        assert len(state.extracted_statements) == 2
        assert len(state.downstream_impacts) == 4
        assert set(state.grouped_categories) == {"Economic", "Labor & Social"}
        flattened = [i for members in state.grouped_categories.values() for i in members]
        assert sorted(flattened) == sorted(state.downstream_impacts)
        assert set(state.research_findings) == set(state.grouped_categories)
        assert state.evaluated_scores == {"Economic": 0.5, "Labor & Social": 0.5}
        assert state.final_summary.startswith("## Overview")

        # 1 extract + 2 downstream + 1 categorize + 2 research + 2 evaluate + 1 summarize
        assert len(provider.calls) == 9
        assert len(usage.records) == 9
        assert all(r.analysis_id == "run-1" and r.success for r in usage.records)

        # 7 haiku calls at 0.00028 + 2 sonnet-4 research calls at 0.00105
        expected = Decimal("0.00406")
        assert sum(r.cost for r in usage.records) == expected
        assert asyncio.run(ledger.get_balance("u1")).balance == Decimal("10") - expected
        [tx] = asyncio.run(ledger.get_transactions("u1"))
        assert tx.amount == -expected
        assert tx.reference_id == "run-1"

    def test_generates_analysis_id(self, fake_provider_cls):
        service, _, usage = _service(fake_provider_cls())
        state = asyncio.run(service.run_analysis("Build free public transit", "u1"))
        assert state.analysis_id
        assert {r.analysis_id for r in usage.records} == {state.analysis_id}

    def test_providers_do_not_share_usage(self, fake_provider_cls):
        other = fake_provider_cls()
        other.usage.input_tokens = 999
        service, _, usage = _service(fake_provider_cls())

        asyncio.run(service.run_analysis("Build free public transit", "u1"))

        assert {r.input_tokens for r in usage.records} == {100}

    def test_insufficient_balance_blocks_run(self, fake_provider_cls):
        provider = fake_provider_cls()
        config = WhifConfig(ledger=LedgerConfig(initial_allowance="0.50"))
        service, ledger, usage = _service(provider, config)

        with pytest.raises(InsufficientBalanceError) as info:
            asyncio.run(service.run_analysis("Build free public transit", "u1"))

        assert info.value.required == Decimal("1.00")
        assert info.value.available == Decimal("0.50")
        assert provider.calls == []
        assert usage.records == []

    def test_failed_stage_records_usage_but_does_not_debit(self, fake_provider_cls):
        provider = fake_provider_cls(
            statements=["Make all public transit fares free"],
            fail_on={
                "downstream_impacts": PermanentProviderError(
                    "invalid request", status_code=400
                )
            },
        )
        service, ledger, usage = _service(provider)

        with pytest.raises(PermanentProviderError):
            asyncio.run(service.run_analysis("Build free public transit", "u1"))

        assert sorted(r.success for r in usage.records) == [False, True]
        assert all(r.cost == 0 for r in usage.records if not r.success)
        assert asyncio.run(ledger.get_transactions("u1")) == []
        assert asyncio.run(ledger.get_balance("u1")).balance == Decimal("10")

    def test_cost_above_balance_returns_result_without_debit(
        self, fake_provider_cls, caplog
    ):
        config = WhifConfig(
            ledger=LedgerConfig(initial_allowance="0.001", estimated_cost="0")
        )
        service, ledger, _ = _service(fake_provider_cls(), config)

        with caplog.at_level("ERROR"):
            state = asyncio.run(service.run_analysis("Build free public transit", "u1"))

        assert state.final_summary
        assert asyncio.run(ledger.get_balance("u1")).balance == Decimal("0.001")
        assert asyncio.run(ledger.get_transactions("u1")) == []
        assert "without debit" in caplog.text
