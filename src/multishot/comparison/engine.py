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

"""Comparison and scoring of backend responses.

Given an AggregateResult, scores the successful responses against each other:

- Pairwise similarity (word overlap by default, or difflib sequence ratio)
- Completeness relative to the longest response in the group
- A ranking by the weighted combination of both
- Consensus groups of near-identical responses
- Human readable insights about agreement, length and latency

The aggregate is only read, never modified.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from enum import Enum
from itertools import combinations

from multishot.core.errors import ConfigurationError
from multishot.core.models import AggregateResult, BackendResult

logger = logging.getLogger(__name__)

SimilarityFunction = Callable[[str, str], float]


def word_overlap(text1: str, text2: str) -> float:
    """Jaccard similarity of the lower-cased word sets (0.0-1.0)."""
    words1 = set(text1.lower().split())
    words2 = set(text2.lower().split())
    if not words1 and not words2:
        return 1.0
    union = words1 | words2
    return len(words1 & words2) / len(union)


def sequence_ratio(text1: str, text2: str) -> float:
    """difflib similarity ratio of the lower-cased texts (0.0-1.0)."""
    return SequenceMatcher(None, text1.lower(), text2.lower()).ratio()


SIMILARITY_METRICS: dict[str, SimilarityFunction] = {
    "word_overlap": word_overlap,
    "sequence": sequence_ratio,
}


class ComparisonStatus(str, Enum):
    """Whether a comparison could be made."""

    COMPARED = "compared"
    NOT_COMPARABLE = "not_comparable"  # Fewer than two usable responses


@dataclass(frozen=True)
class PairwiseSimilarity:
    """Similarity between two responses, identified by label."""

    first: str
    second: str
    score: float


@dataclass
class ResponseScore:
    """Scores for one response.

    Attributes:
        label: Backend name, suffixed with #run_index when runs > 1
        length: Response length in characters
        completeness: Length relative to the longest response (0.0-1.0)
        mean_similarity: Average similarity to every other response
        overall: Weighted combination used for ranking
        latency: Seconds the backend took
    """

    label: str
    backend: str
    run_index: int
    length: int
    completeness: float
    mean_similarity: float
    overall: float
    latency: float


@dataclass
class ComparisonReport:
    """Outcome of comparing the responses of one run."""

    status: ComparisonStatus
    scores: list[ResponseScore] = field(default_factory=list)
    pairs: list[PairwiseSimilarity] = field(default_factory=list)
    mean_similarity: float | None = None
    groups: list[list[str]] = field(default_factory=list)
    insights: list[str] = field(default_factory=list)
    recommendation: str | None = None
    reason: str | None = None

    @property
    def comparable(self) -> bool:
        return self.status == ComparisonStatus.COMPARED

    @property
    def ranking(self) -> list[str]:
        """Labels from best to worst."""
        return [score.label for score in self.scores]

    @property
    def best(self) -> ResponseScore | None:
        return self.scores[0] if self.scores else None


class ComparisonEngine:
    """Scores and ranks the responses of an AggregateResult.

    Example:
        >>> report = ComparisonEngine().compare(aggregate)
        >>> if report.comparable:
        ...     print(report.ranking, report.mean_similarity)
        ... else:
        ...     print(report.reason)
    """

    def __init__(
        self,
        metric: str | SimilarityFunction = "word_overlap",
        similarity_weight: float = 0.5,
        completeness_weight: float = 0.5,
        group_threshold: float = 0.85,
    ) -> None:
        """Initialize comparison engine.

        Args:
            metric: "word_overlap", "sequence" or a custom (text, text) -> float
            similarity_weight: Weight of mean similarity in the overall score
            completeness_weight: Weight of completeness in the overall score
            group_threshold: Minimum similarity for two responses to share a group

        Raises:
            ConfigurationError: If the metric is unknown or weights are invalid
        """
        if isinstance(metric, str):
            if metric not in SIMILARITY_METRICS:
                raise ConfigurationError(
                    f"Unknown similarity metric '{metric}'. "
                    f"Available: {', '.join(SIMILARITY_METRICS)}"
                )
            self._similarity = SIMILARITY_METRICS[metric]
        else:
            self._similarity = metric
        if similarity_weight < 0 or completeness_weight < 0:
            raise ConfigurationError("Weights must not be negative")
        if similarity_weight + completeness_weight == 0:
            raise ConfigurationError("At least one weight must be positive")
        self.similarity_weight = similarity_weight
        self.completeness_weight = completeness_weight
        self.group_threshold = group_threshold

    def similarity(self, text1: str, text2: str) -> float:
        return self._similarity(text1, text2)

    def compare(self, aggregate: AggregateResult) -> ComparisonReport:
        """Compare the successful responses of a run."""
        usable = [
            result
            for result in aggregate.successful()
            if result.response is not None and result.response.strip()
        ]
        labels = {result.key: self._label(result, aggregate) for result in usable}

        if not usable:
            return ComparisonReport(
                status=ComparisonStatus.NOT_COMPARABLE,
                reason="No successful responses to compare",
                insights=self._failure_insights(aggregate),
            )

        pairs = [
            PairwiseSimilarity(
                first=labels[a.key],
                second=labels[b.key],
                score=self.similarity(a.response or "", b.response or ""),
            )
            for a, b in combinations(usable, 2)
        ]
        scores = self._score(usable, labels, pairs)

        if len(usable) < 2:
            return ComparisonReport(
                status=ComparisonStatus.NOT_COMPARABLE,
                scores=scores,
                reason="Insufficient responses for comparison",
                insights=self._failure_insights(aggregate),
            )

        mean_similarity = sum(pair.score for pair in pairs) / len(pairs)
        report = ComparisonReport(
            status=ComparisonStatus.COMPARED,
            scores=scores,
            pairs=pairs,
            mean_similarity=mean_similarity,
            groups=self._group(usable, labels),
        )
        report.insights = self._insights(report, usable, labels, aggregate)
        best = scores[0]
        report.recommendation = f"{best.label} ranks highest (score {best.overall:.2f})"
        logger.debug(
            f"Compared {len(usable)} responses: mean similarity {mean_similarity:.3f}, "
            f"best {best.label}"
        )
        return report

    @staticmethod
    def _label(result: BackendResult, aggregate: AggregateResult) -> str:
        if aggregate.runs_per_backend > 1:
            return f"{result.backend}#{result.run_index}"
        return result.backend

    def _score(
        self,
        usable: list[BackendResult],
        labels: dict[tuple[str, int], str],
        pairs: list[PairwiseSimilarity],
    ) -> list[ResponseScore]:
        longest = max(len(result.response or "") for result in usable)
        total_weight = self.similarity_weight + self.completeness_weight

        scores: list[ResponseScore] = []
        for result in usable:
            label = labels[result.key]
            related = [pair.score for pair in pairs if label in (pair.first, pair.second)]
            length = len(result.response or "")
            completeness = length / longest if longest else 0.0
            if related:
                mean_similarity = sum(related) / len(related)
                overall = (
                    self.similarity_weight * mean_similarity
                    + self.completeness_weight * completeness
                ) / total_weight
            else:
                mean_similarity = 0.0
                overall = completeness
            scores.append(
                ResponseScore(
                    label=label,
                    backend=result.backend,
                    run_index=result.run_index,
                    length=length,
                    completeness=completeness,
                    mean_similarity=mean_similarity,
                    overall=overall,
                    latency=result.latency,
                )
            )

        # Stable sort keeps caller order for ties
        return sorted(scores, key=lambda score: -score.overall)

    def _group(
        self, usable: list[BackendResult], labels: dict[tuple[str, int], str]
    ) -> list[list[str]]:
        groups: list[list[BackendResult]] = []
        for result in usable:
            for group in groups:
                # Compare with the first response in the group
                if (
                    self.similarity(result.response or "", group[0].response or "")
                    >= self.group_threshold
                ):
                    group.append(result)
                    break
            else:
                groups.append([result])
        return [[labels[result.key] for result in group] for group in groups]

    def _insights(
        self,
        report: ComparisonReport,
        usable: list[BackendResult],
        labels: dict[tuple[str, int], str],
        aggregate: AggregateResult,
    ) -> list[str]:
        insights: list[str] = []
        mean = report.mean_similarity or 0.0
        if mean > 0.8:
            insights.append(f"High consensus: responses are {mean:.0%} similar on average")
        elif mean > 0.5:
            insights.append(f"Moderate consensus: responses are {mean:.0%} similar on average")
        else:
            insights.append(f"Low consensus: responses are only {mean:.0%} similar on average")

        lengths = [len(result.response or "") for result in usable]
        if max(lengths) and (max(lengths) - min(lengths)) / max(lengths) > 0.3:
            insights.append(
                f"Response length varies widely ({min(lengths)} to {max(lengths)} characters)"
            )

        fastest = min(usable, key=lambda result: result.latency)
        slowest = max(usable, key=lambda result: result.latency)
        if fastest.latency > 0 and slowest.latency > 2 * fastest.latency:
            insights.append(
                f"{labels[fastest.key]} was fastest ({fastest.latency:.2f}s); "
                f"{labels[slowest.key]} was slowest ({slowest.latency:.2f}s)"
            )

        if len(report.groups) > 1:
            insights.append(f"Responses fall into {len(report.groups)} distinct groups")

        insights.extend(self._failure_insights(aggregate))
        return insights

    @staticmethod
    def _failure_insights(aggregate: AggregateResult) -> list[str]:
        failures = aggregate.failures()
        if not failures:
            return []
        names = ", ".join(sorted({result.backend for result in failures}))
        return [f"{len(failures)} backend run(s) failed: {names}"]
