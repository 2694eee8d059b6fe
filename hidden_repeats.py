#!/usr/bin/env python3
"""
Hidden Repeat Finder for DNA sequences

Implements a segment-and-merge approach:
1. Fixed-length segmentation with per-phase consensus words and binomial p-values
2. Exact-word merge of adjacent segments sharing a representative word
3. Noise merge of weak segments sandwiched between two strong anchors
"""

import numpy as np
from typing import List, Optional, Sequence, Tuple
import argparse
from dataclasses import dataclass, replace
import sys
import time
import math


# Fixed enumeration order; the first base reaching the maximum count wins ties
ALPHABET: Tuple[str, ...] = ("A", "C", "G", "T")
ALPHABET_CODES = np.array([ord(b) for b in ALPHABET], dtype=np.uint8)

# Null model: uniform random choice among the four bases
NULL_BASE_PROBABILITY = 0.25

DEMO_SEQUENCE = (
    "GTGACGGTGTAG"    # strong repeat GTG
    "ACGTTAGGACTA"    # weak noise
    "GTGACGGTGTAG"    # strong repeat GTG again
)


class InvalidConfiguration(ValueError):
    """Raised when segment length, word length or thresholds are unusable."""


class EmptyInput(ValueError):
    """Raised when there is no sequence to analyze."""


@dataclass
class RepeatConfig:
    """Parameters of the segment-and-merge pipeline.

    Attributes:
        segment_length: Chunk length L used by the segmenter
        word_length: Sub-period K, the length of every representative word
        tau1: Weak threshold; a middle segment above it is a noise candidate
        tau2: Strong threshold; flanking segments below it are anchors
        alpha: Accepted for compatibility, not read by any merge decision
    """
    segment_length: int = 12
    word_length: int = 3
    tau1: float = 0.1
    tau2: float = 0.01
    alpha: float = 0.05

    def validate(self) -> "RepeatConfig":
        if self.segment_length <= 0:
            raise InvalidConfiguration(
                f"segment_length must be positive, got {self.segment_length}")
        if self.word_length <= 0:
            raise InvalidConfiguration(
                f"word_length must be positive, got {self.word_length}")
        for name in ("tau1", "tau2"):
            value = getattr(self, name)
            if not 0.0 < value < 1.0:
                raise InvalidConfiguration(f"{name} must lie in (0, 1), got {value}")
        return self


class RepeatStats:
    """Statistics used to profile and score segments."""

    @staticmethod
    def log_binomial_coefficient(n: int, k: int) -> float:
        """log C(n, k) by the multiplicative recurrence (no factorials)."""
        if k < 0 or k > n:
            return -math.inf
        k = min(k, n - k)
        i = np.arange(1, k + 1, dtype=np.float64)
        return float(np.sum(np.log((n - i + 1) / i)))

    @staticmethod
    def binomial_tail(n: int, k: int, p: float = NULL_BASE_PROBABILITY) -> float:
        """Upper tail P(X >= k) for X ~ Binomial(n, p), as an exact finite sum.

        Terms are summed in log space, so long segments neither overflow the
        coefficients nor underflow the powers. For 0 < k <= n the result is
        clamped to [sys.float_info.min, 1.0].
        """
        if k <= 0:
            return 1.0
        if k > n:
            return 0.0

        i = np.arange(k, n + 1, dtype=np.float64)
        # log C(n, i + 1) = log C(n, i) + log((n - i) / (i + 1))
        steps = np.log((n - i[:-1]) / (i[:-1] + 1))
        log_coef = (RepeatStats.log_binomial_coefficient(n, k) +
                    np.concatenate(([0.0], np.cumsum(steps))))
        log_terms = log_coef + i * math.log(p) + (n - i) * math.log1p(-p)
        total = math.exp(float(np.logaddexp.reduce(log_terms)))
        return min(1.0, max(sys.float_info.min, total))

    @staticmethod
    def position_profile(content: str, k: int) -> Tuple[str, Tuple[float, ...]]:
        """Consensus word and per-phase p-values of a segment.

        Only full units of k symbols are counted; a trailing partial unit is
        ignored. Symbols outside the alphabet never increment a counter.

        Args:
            content: Segment symbols
            k: Sub-period (word length)

        Returns:
            (representative_word, position_pvalues)
        """
        num_units = len(content) // k
        # Non-ASCII symbols become '?'
        codes = np.frombuffer(content.encode('ascii', errors='replace'), dtype=np.uint8)
        units = codes[:num_units * k].reshape(num_units, k)

        word = []
        pvalues = []
        for pos in range(k):
            column = units[:, pos]
            counts = np.array([np.count_nonzero(column == code) for code in ALPHABET_CODES])
            best = int(np.argmax(counts))  # first maximum in ALPHABET order
            word.append(ALPHABET[best])
            pvalues.append(RepeatStats.binomial_tail(num_units, int(counts[best]),
                                                     NULL_BASE_PROBABILITY))
        return ''.join(word), tuple(pvalues)

    @staticmethod
    def combine_pvalues_fisher(pvalues: Sequence[float]) -> float:
        """Fisher-style surrogate score, exp(-0.5 * X) with X = -2 * sum(log p).

        Zero p-values are skipped. This is not the chi-square Fisher p-value;
        the thresholds tau1/tau2 are defined against this score. The result
        never underflows below sys.float_info.min.
        """
        arr = np.asarray(pvalues, dtype=np.float64)
        positive = arr[arr > 0]
        x = -2.0 * float(np.sum(np.log(positive))) if positive.size else 0.0
        return max(sys.float_info.min, float(np.exp(-0.5 * x)))


@dataclass(frozen=True)
class Segment:
    """A contiguous, possibly merged run of the input sequence."""
    content: str
    representative_word: str
    position_pvalues: Tuple[float, ...]
    combined_pvalue: float
    start_index: int

    @classmethod
    def build(cls, content: str, start_index: int, word_length: int) -> "Segment":
        """Profile and score content starting at start_index."""
        word, pvalues = RepeatStats.position_profile(content, word_length)
        return cls(
            content=content,
            representative_word=word,
            position_pvalues=pvalues,
            combined_pvalue=RepeatStats.combine_pvalues_fisher(pvalues),
            start_index=start_index,
        )

    @property
    def length(self) -> int:
        return len(self.content)

    @property
    def end(self) -> int:
        return self.start_index + self.length

    def merged_with(self, *others: "Segment", word_length: int,
                    keep_word: bool = False) -> "Segment":
        """New segment with the others' content appended, re-profiled.

        With keep_word the representative word stays this segment's word and
        only the p-values are recomputed over the longer content.
        """
        content = self.content + ''.join(o.content for o in others)
        merged = Segment.build(content, self.start_index, word_length)
        if keep_word:
            merged = replace(merged, representative_word=self.representative_word)
        return merged

    def summary(self) -> str:
        return (f"Start:{self.start_index}, Len:{self.length}, "
                f"Word:{self.representative_word}, P:{self.combined_pvalue:.5f}")

    def to_table(self) -> str:
        """Tab-delimited row: start, end, length, word, combined p, per-phase p."""
        phases = ",".join(f"{p:.5g}" for p in self.position_pvalues)
        return (f"{self.start_index}\t{self.end}\t{self.length}\t"
                f"{self.representative_word}\t{self.combined_pvalue:.6g}\t{phases}")

    def to_bed(self, name: str = "seq") -> str:
        """Convert to BED format."""
        return (f"{name}\t{self.start_index}\t{self.end}\t"
                f"{self.representative_word}\t{self.combined_pvalue:.6g}")


class HiddenRepeatFinder:
    """Runs segmentation, exact-word merge and noise merge over one sequence."""

    def __init__(self, config: Optional[RepeatConfig] = None, show_progress: bool = False):
        """
        Initialize the hidden repeat finder.

        Args:
            config: Pipeline parameters (defaults to RepeatConfig())
            show_progress: Print per-stage progress information
        """
        self.config = (config or RepeatConfig()).validate()
        self.show_progress = show_progress

    def segment_sequence(self, sequence: str) -> List[Segment]:
        """Split sequence into chunks of segment_length; the last may be shorter."""
        if not sequence:
            raise EmptyInput("sequence is empty")

        L = self.config.segment_length
        K = self.config.word_length
        return [Segment.build(sequence[i:i + L], i, K) for i in range(0, len(sequence), L)]

    def merge_same_word_segments(self, segments: List[Segment]) -> List[Segment]:
        """Fuse runs of adjacent segments that share a representative word.

        A growing run keeps the word it was formed on; only its p-values are
        recomputed, so no two adjacent outputs share a word.
        """
        merged: List[Segment] = []
        current: Optional[Segment] = None

        for seg in segments:
            if current is None:
                current = seg
            elif seg.representative_word == current.representative_word:
                current = current.merged_with(
                    seg, word_length=self.config.word_length, keep_word=True)
            else:
                merged.append(current)
                current = seg

        if current is not None:
            merged.append(current)
        return merged

    def _is_noise_bridge(self, left: Segment, middle: Segment, right: Segment) -> bool:
        left_strong = left.combined_pvalue < self.config.tau2
        right_strong = right.combined_pvalue < self.config.tau2
        middle_weak = middle.combined_pvalue > self.config.tau1

        return (middle.representative_word != left.representative_word and
                middle.representative_word != right.representative_word and
                left_strong and right_strong and middle_weak)

    def merge_noise_segments(self, segments: List[Segment]) -> List[Segment]:
        """Absorb a weak middle segment and its strong right neighbor into the left one.

        The window boundary is taken from the input list while the left
        neighbor is the last emitted output segment, so a freshly merged left
        is only compared against input[i] once i has moved past the merge.
        config.alpha is not consulted.
        """
        result: List[Segment] = []
        count = len(segments)
        i = 0

        while i < count:
            if 0 < i < count - 1:
                left = result[-1]
                middle = segments[i]
                right = segments[i + 1]

                if self._is_noise_bridge(left, middle, right):
                    result[-1] = left.merged_with(middle, right,
                                                  word_length=self.config.word_length)
                    i += 2  # Skip middle + right
                    continue

            result.append(segments[i])
            i += 1

        return result

    def run_stages(self, sequence: str) -> Tuple[List[Segment], List[Segment], List[Segment]]:
        """Run the pipeline, returning (segmented, exact_merged, noise_merged)."""
        start_time = time.time()

        segmented = self.segment_sequence(sequence)
        if self.show_progress:
            print(f"  Segmented {len(sequence):,} bp into {len(segmented)} segments "
                  f"(L={self.config.segment_length}, K={self.config.word_length})")

        exact_merged = self.merge_same_word_segments(segmented)
        if self.show_progress:
            print(f"  Exact-word merge: {len(segmented)} -> {len(exact_merged)} segments")

        noise_merged = self.merge_noise_segments(exact_merged)
        if self.show_progress:
            elapsed = time.time() - start_time
            print(f"  Noise merge: {len(exact_merged)} -> {len(noise_merged)} segments "
                  f"({elapsed:.3f}s)")

        return segmented, exact_merged, noise_merged

    def find_hidden_repeats(self, sequence: str) -> List[Segment]:
        """Final merged segments covering sequence."""
        return self.run_stages(sequence)[2]

    def save_results(self, segments: List[Segment], output_file: str,
                     format_type: str = "table", name: str = "seq"):
        """Save merged segments to file."""
        with open(output_file, 'w') as f:
            if format_type == "table":
                f.write("# Hidden Repeat Segments\n")
                f.write("# start\tend\tlength\tword\tcombined_pvalue\tposition_pvalues\n")
                for seg in segments:
                    f.write(seg.to_table() + "\n")

            elif format_type == "bed":
                f.write("# Hidden Repeat Segments (BED format)\n")
                f.write("# name\tstart\tend\tword\tcombined_pvalue\n")
                for seg in segments:
                    f.write(seg.to_bed(name) + "\n")

            else:
                raise ValueError(f"Unknown output format: {format_type}")


def load_sequence(path: str) -> str:
    """Read a plain-text sequence file, dropping all whitespace."""
    with open(path, 'r') as f:
        return ''.join(f.read().split()).upper()


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Hidden Repeat Finder: segment, score and merge conserved regions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run on the built-in demonstration sequence
  python hidden_repeats.py --demo

  # Analyze a literal sequence with a longer segment length
  python hidden_repeats.py GTGACGGTGTAGACGTTAGGACTA --segment-length 24

  # Analyze a plain-text sequence file and write BED output
  python hidden_repeats.py --input seq.txt -o repeats.bed --format bed
        """
    )
    parser.add_argument("sequence", nargs="?", help="Literal sequence to analyze")
    parser.add_argument("--input", help="Plain-text sequence file (whitespace ignored)")
    parser.add_argument("--demo", action="store_true", help="Use the built-in demonstration sequence")
    parser.add_argument("-o", "--output", help="Output file (default: print only)")
    parser.add_argument("--format", choices=["table", "bed"], default="table",
                        help="Output format (default: table)")
    parser.add_argument("--name", default="seq", help="Sequence name used in BED output (default: seq)")
    parser.add_argument("--progress", action="store_true", help="Show per-stage progress")

    parser.add_argument("--segment-length", type=int, default=12,
                        help="Segment chunk length L (default: 12)")
    parser.add_argument("--word-length", type=int, default=3,
                        help="Representative word length K (default: 3)")
    parser.add_argument("--tau1", type=float, default=0.1,
                        help="Weak p-value threshold (default: 0.1)")
    parser.add_argument("--tau2", type=float, default=0.01,
                        help="Strong p-value threshold (default: 0.01)")
    parser.add_argument("--alpha", type=float, default=0.05,
                        help="Reserved significance level, currently unused (default: 0.05)")

    args = parser.parse_args(argv)

    sources = sum(1 for s in (args.sequence, args.input, args.demo) if s)
    if sources != 1:
        parser.error("provide exactly one of SEQUENCE, --input or --demo")

    if args.demo:
        sequence = DEMO_SEQUENCE
    elif args.input:
        sequence = load_sequence(args.input)
    else:
        sequence = ''.join(args.sequence.split()).upper()

    config = RepeatConfig(
        segment_length=args.segment_length,
        word_length=args.word_length,
        tau1=args.tau1,
        tau2=args.tau2,
        alpha=args.alpha,
    )

    try:
        finder = HiddenRepeatFinder(config, show_progress=args.progress)
    except InvalidConfiguration as e:
        parser.error(str(e))
    if not sequence:
        parser.error("sequence is empty")

    print(f"Hidden Repeat Finder")
    print(f"{'=' * 60}")
    print(f"Segment length (L):  {config.segment_length}")
    print(f"Word length (K):     {config.word_length}")
    print(f"Thresholds:          tau1={config.tau1}, tau2={config.tau2}")
    print()
    print(f"Loaded sequence length: {len(sequence)}")
    preview = sequence if len(sequence) <= 60 else sequence[:60] + "..."
    print(f"DNA Sequence Preview: {preview}")
    print()

    segments = finder.find_hidden_repeats(sequence)

    print("Detected Hidden Repeat Segments:")
    for seg in segments:
        print(seg.summary())

    if args.output:
        finder.save_results(segments, args.output, args.format, name=args.name)
        print(f"\nResults saved to {args.output}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
