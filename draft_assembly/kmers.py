import logging
import re
from typing import List, Optional

from .errors import ConfigError

logger = logging.getLogger(__name__)

MIN_K = 31
MAX_K = 127
# Lower floor used for short reads (avg length < SHORT_READ_LEN)
SHORT_READ_MIN_K = 21
SHORT_READ_LEN = 75
MAX_K_READ_FRACTION = 0.75
KMER_POINTS = 5
MIN_KMER_STEP = 5


def parse_user_kmers(kmers: str, avg_len: int) -> List[int]:
    """Validate a user k-mer list such as '31,55,77' (any non-digit separator).

    Order is kept as given. User lists may go down to the short-read floor.
    """
    values = [int(k) for k in re.split(r"\D+", kmers) if k]
    if not values:
        raise ConfigError(f"No k-mer sizes found in '{kmers}'")
    for k in values:
        if k < SHORT_READ_MIN_K:
            raise ConfigError(f"k-mer {k} is below the minimum of {SHORT_READ_MIN_K}")
        if k % 2 == 0:
            raise ConfigError(f"k-mer {k} must be odd")
        if k > MAX_K:
            raise ConfigError(f"k-mer {k} is above the maximum of {MAX_K}")
        if k >= avg_len:
            raise ConfigError(f"k-mer {k} is not shorter than the average read length {avg_len}")
    return values


def auto_kmers(avg_len: int) -> List[int]:
    """Spread up to KMER_POINTS odd k-mers between the floor and 75% of read length."""
    max_k = min(MAX_K, int(MAX_K_READ_FRACTION * avg_len))
    min_k = SHORT_READ_MIN_K if avg_len < SHORT_READ_LEN else MIN_K
    if max_k < min_k:
        raise ConfigError(f"read length too short for assembly (average {avg_len} bp)")

    step = max(MIN_KMER_STEP, (max_k - min_k) // (KMER_POINTS - 1))
    if step % 2:
        # an even step keeps every k odd, since min_k is odd
        step += 1
    return list(range(min_k, max_k + 1, step))


def plan_kmers(avg_len: int, user_kmers: Optional[str] = None) -> List[int]:
    if user_kmers:
        plan = parse_user_kmers(user_kmers, avg_len)
        logger.info(f"Using user-supplied k-mers: {plan}")
    else:
        plan = auto_kmers(avg_len)
        logger.info(f"Estimated k-mers from average read length {avg_len}: {plan}")
    return plan
