from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Tuple

from prometheus_client.parser import text_string_to_metric_families

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ParsedSample:
    name: str
    labels: Dict[str, str]
    value: float


# PUBLIC_INTERFACE
def parse_exposition(text: str) -> Tuple[List[ParsedSample], List[str]]:
    """
    Parse Prometheus text exposition format line by line.

    Each sample line is parsed on its own so one malformed line does not discard the rest of the payload.
    Comment lines (# HELP / # TYPE) are skipped; metric names are kept exactly as exposed.

    Returns (samples, errors) where errors holds a short description per rejected line.
    """
    samples: List[ParsedSample] = []
    errors: List[str] = []

    for lineno, raw in enumerate((text or "").splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        try:
            for family in text_string_to_metric_families(line + "\n"):
                for s in family.samples:
                    samples.append(ParsedSample(name=s.name, labels=dict(s.labels), value=float(s.value)))
        except (ValueError, TypeError, IndexError) as e:
            errors.append(f"line {lineno}: {e}")

    return samples, errors
