from abc import ABC, abstractmethod


class SimilarityScorer(ABC):
    """
    Scores how close two agent responses are.

    Implementations must be deterministic and return a value in [0, 1],
    where 1.0 means the same meaning and 0.0 means unrelated.
    """

    @abstractmethod
    def similarity(self, baseline: str, current: str) -> float:
        ...

    def __call__(self, baseline: str, current: str) -> float:
        return self.similarity(baseline, current)


class JaccardSimilarityScorer(SimilarityScorer):
    """Word-overlap (Jaccard) similarity over lower-cased whitespace tokens."""

    def similarity(self, baseline: str, current: str) -> float:
        baseline_words = set(baseline.lower().split())
        current_words = set(current.lower().split())

        union = baseline_words | current_words
        # Two empty responses are identical, not divergent
        if not union:
            return 1.0

        return len(baseline_words & current_words) / len(union)
