# Copyright 2025 KTTC AI (https://github.com/kttc-ai)
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Unit tests for response comparison and scoring."""

from __future__ import annotations

import pytest
from hypothesis import given
from hypothesis import strategies as st

from multishot.comparison.engine import (
    ComparisonEngine,
    ComparisonStatus,
    sequence_ratio,
    word_overlap,
)
from multishot.core.errors import ConfigurationError, EngineAuthenticationError
from multishot.core.models import AggregateResult, BackendResult

pytestmark = pytest.mark.unit


def build_aggregate(*results: BackendResult, runs: int = 1) -> AggregateResult:
    order: list[str] = []
    for result in results:
        if result.backend not in order:
            order.append(result.backend)
    aggregate = AggregateResult(backend_order=order, runs_per_backend=runs)
    for result in results:
        aggregate.record(result)
    return aggregate


def ok(backend: str, response: str, latency: float = 1.0, run_index: int = 0) -> BackendResult:
    return BackendResult(
        backend=backend, run_index=run_index, success=True, response=response, latency=latency
    )


class TestSimilarityMetrics:
    """Similarity functions."""

    def test_word_overlap_identical(self) -> None:
        assert word_overlap("The cat sat", "the CAT sat") == 1.0

    def test_word_overlap_partial(self) -> None:
        # {a, b, c} vs {b, c, d}: 2 shared of 4
        assert word_overlap("a b c", "b c d") == 0.5

    def test_word_overlap_disjoint_and_empty(self) -> None:
        assert word_overlap("alpha", "beta") == 0.0
        assert word_overlap("", "") == 1.0
        assert word_overlap("word", "") == 0.0

    def test_sequence_ratio(self) -> None:
        assert sequence_ratio("hello", "HELLO") == 1.0
        assert 0.0 < sequence_ratio("hello world", "hello there") < 1.0

    @given(st.text(max_size=40), st.text(max_size=40))
    def test_word_overlap_symmetric_and_bounded(self, first: str, second: str) -> None:
        score = word_overlap(first, second)
        assert 0.0 <= score <= 1.0
        assert score == word_overlap(second, first)


class TestComparisonEngineConfig:
    """Constructor validation."""

    def test_unknown_metric(self) -> None:
        with pytest.raises(ConfigurationError):
            ComparisonEngine(metric="cosine")

    def test_negative_weight(self) -> None:
        with pytest.raises(ConfigurationError):
            ComparisonEngine(similarity_weight=-1.0)

    def test_zero_weights(self) -> None:
        with pytest.raises(ConfigurationError):
            ComparisonEngine(similarity_weight=0.0, completeness_weight=0.0)

    def test_custom_metric(self) -> None:
        engine = ComparisonEngine(metric=lambda a, b: 0.25)
        assert engine.similarity("x", "y") == 0.25


class TestCompare:
    """Scoring, ranking and insights."""

    def test_not_comparable_without_successes(self) -> None:
        failure = BackendResult.failure("down", 0, EngineAuthenticationError("bad key"))
        report = ComparisonEngine().compare(build_aggregate(failure))

        assert report.status == ComparisonStatus.NOT_COMPARABLE
        assert not report.comparable
        assert report.best is None
        assert report.insights == ["1 backend run(s) failed: down"]

    def test_not_comparable_with_single_response(self) -> None:
        report = ComparisonEngine().compare(build_aggregate(ok("solo", "only answer")))

        assert not report.comparable
        assert report.ranking == ["solo"]
        assert report.mean_similarity is None

    def test_blank_responses_ignored(self) -> None:
        report = ComparisonEngine().compare(
            build_aggregate(ok("a", "real answer"), ok("b", "   "))
        )
        assert not report.comparable

    def test_ranking_prefers_consensus_and_completeness(self) -> None:
        aggregate = build_aggregate(
            ok("short", "paris"),
            ok("full", "the capital of france is paris"),
            ok("similar", "the capital of france is paris indeed"),
        )

        report = ComparisonEngine().compare(aggregate)

        assert report.comparable
        assert report.ranking[0] == "similar"
        assert report.ranking[-1] == "short"
        assert len(report.pairs) == 3
        assert report.best is not None
        assert report.best.completeness == 1.0
        assert report.recommendation is not None
        assert report.recommendation.startswith("similar")

    def test_identical_responses_high_consensus(self) -> None:
        aggregate = build_aggregate(ok("a", "same words here"), ok("b", "same words here"))

        report = ComparisonEngine().compare(aggregate)

        assert report.mean_similarity == 1.0
        assert report.groups == [["a", "b"]]
        assert report.insights[0].startswith("High consensus")

    def test_divergent_responses_grouped_apart(self) -> None:
        aggregate = build_aggregate(
            ok("a", "yes absolutely"),
            ok("b", "no never"),
            ok("c", "yes absolutely"),
        )

        report = ComparisonEngine().compare(aggregate)

        assert report.groups == [["a", "c"], ["b"]]
        assert any("2 distinct groups" in insight for insight in report.insights)

    def test_latency_and_length_insights(self) -> None:
        aggregate = build_aggregate(
            ok("quick", "tiny", latency=0.1),
            ok("thorough", "a much much longer response text", latency=1.0),
        )

        insights = ComparisonEngine().compare(aggregate).insights

        assert any(insight.startswith("Low consensus") for insight in insights)
        assert any("length varies widely" in insight for insight in insights)
        assert any("quick was fastest" in insight for insight in insights)

    def test_failures_reported_in_insights(self) -> None:
        aggregate = build_aggregate(
            ok("a", "answer one"),
            ok("b", "answer two"),
            BackendResult.failure("c", 0, EngineAuthenticationError("bad key")),
        )

        report = ComparisonEngine().compare(aggregate)

        assert report.comparable
        assert "1 backend run(s) failed: c" in report.insights

    def test_multiple_runs_labelled_by_index(self) -> None:
        aggregate = build_aggregate(
            ok("model", "first take", run_index=0),
            ok("model", "second take", run_index=1),
            runs=2,
        )

        report = ComparisonEngine().compare(aggregate)

        assert sorted(report.ranking) == ["model#0", "model#1"]

    def test_aggregate_not_modified(self) -> None:
        aggregate = build_aggregate(ok("a", "one two"), ok("b", "two three"))
        before = [result.model_dump() for result in aggregate]

        ComparisonEngine(metric="sequence").compare(aggregate)

        assert [result.model_dump() for result in aggregate] == before
