"""Agreement metrics."""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from itertools import combinations
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd

from .shared.keys import VariableKey
from .store import CodingRecord

KAPPA_BANDS = (
    (0.0, "poor"),
    (0.2, "slight"),
    (0.4, "fair"),
    (0.6, "moderate"),
    (0.8, "substantial"),
)


def percent_agreement(unit_values: Iterable[Sequence[object | None]]) -> float:
    """Compute percent agreement across units."""
    total = 0
    agree = 0
    for values in unit_values:
        observed = [value for value in values if value is not None]
        if not observed:
            continue
        total += 1
        if len(set(observed)) == 1:
            agree += 1
    return agree / total if total else 0.0


def cohens_kappa(pairs: Sequence[tuple[object | None, object | None]]) -> float:
    """Compute Cohen's kappa for matched coder pairs from their confusion matrix."""
    filtered = [(a, b) for a, b in pairs if a is not None and b is not None]
    if not filtered:
        return 0.0
    first = pd.Series([a for a, _ in filtered], name="a")
    second = pd.Series([b for _, b in filtered], name="b")
    categories = sorted({*first, *second}, key=str)
    matrix = pd.crosstab(first, second).reindex(index=categories, columns=categories, fill_value=0)
    counts = matrix.to_numpy(dtype=float)
    total = counts.sum()
    po = np.trace(counts) / total
    pe = float((counts.sum(axis=1) * counts.sum(axis=0)).sum()) / (total * total)
    if pe == 1.0:
        return 1.0
    kappa = (po - pe) / (1 - pe)
    return 0.0 if math.isnan(kappa) else float(kappa)


def interpret_kappa(kappa: float) -> str:
    for upper, label in KAPPA_BANDS:
        if kappa < upper:
            return label
    return "almost_perfect"


@dataclass(frozen=True)
class CoderPairAgreement:
    variable: VariableKey
    coder_a: str
    coder_b: str
    kappa: float
    observed_agreement: float
    shared_items: int
    valid_pairs: int

    @property
    def interpretation(self) -> str:
        return interpret_kappa(self.kappa)


@dataclass
class AgreementSummary:
    pairs: List[CoderPairAgreement] = field(default_factory=list)
    percent_agreement: float = 0.0
    double_coded_items: int = 0

    @property
    def average_kappa(self) -> Optional[float]:
        if not self.pairs:
            return None
        return round(sum(pair.kappa for pair in self.pairs) / len(self.pairs), 3)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            [
                {
                    "variable": pair.variable.label,
                    "coder_a": pair.coder_a,
                    "coder_b": pair.coder_b,
                    "kappa": pair.kappa,
                    "interpretation": pair.interpretation,
                    "observed_agreement": pair.observed_agreement,
                    "shared_items": pair.shared_items,
                    "valid_pairs": pair.valid_pairs,
                }
                for pair in self.pairs
            ],
            columns=[
                "variable",
                "coder_a",
                "coder_b",
                "kappa",
                "interpretation",
                "observed_agreement",
                "shared_items",
                "valid_pairs",
            ],
        )


def coder_pair_agreement(codings: Iterable[CodingRecord]) -> AgreementSummary:
    """Cohen's kappa for every coder pair that coded the same responses of a variable."""
    items: Dict[VariableKey, Dict[int, Dict[str, Optional[int]]]] = {}
    for record in codings:
        if record.code is None:
            continue
        by_response = items.setdefault(record.key, {})
        by_response.setdefault(record.response_id, {}).setdefault(record.coder, record.code)

    summary = AgreementSummary()
    agreement_units: List[List[Optional[int]]] = []
    for variable in sorted(items):
        responses = items[variable]
        double_coded = {rid: codes for rid, codes in responses.items() if len(codes) > 1}
        summary.double_coded_items += len(double_coded)
        agreement_units.extend(list(codes.values()) for codes in double_coded.values())
        coders = sorted({coder for codes in double_coded.values() for coder in codes})
        for coder_a, coder_b in combinations(coders, 2):
            shared = [
                (codes[coder_a], codes[coder_b])
                for codes in double_coded.values()
                if coder_a in codes and coder_b in codes
            ]
            if not shared:
                continue
            valid = [(a, b) for a, b in shared if a is not None and b is not None]
            observed = sum(1 for a, b in valid if a == b) / len(valid) if valid else 0.0
            summary.pairs.append(
                CoderPairAgreement(
                    variable=variable,
                    coder_a=coder_a,
                    coder_b=coder_b,
                    kappa=round(cohens_kappa(valid), 3),
                    observed_agreement=round(observed, 3),
                    shared_items=len(shared),
                    valid_pairs=len(valid),
                )
            )
    summary.percent_agreement = round(percent_agreement(agreement_units), 3)
    return summary

