import secrets
from typing import List

CODE_DIGITS = 4
DECOY_COUNT = 4

_rng = secrets.SystemRandom()


def random_code() -> str:
    """Uniform 4-digit code, zero-padded ("0000".."9999")."""
    return f"{secrets.randbelow(10 ** CODE_DIGITS):0{CODE_DIGITS}d}"


def is_code(value) -> bool:
    return isinstance(value, str) and len(value) == CODE_DIGITS and value.isdigit()


def generate(target: str, decoys: int = DECOY_COUNT) -> List[str]:
    """
    Return the target plus `decoys` distinct wrong codes, shuffled.

    Decoys are redrawn on any collision with the target or each other. The
    final order is a uniform permutation, so the answer's slot says nothing.
    """
    if not is_code(target):
        raise ValueError("target must be a 4-digit string")

    picked: List[str] = []
    while len(picked) < decoys:
        candidate = random_code()
        if candidate != target and candidate not in picked:
            picked.append(candidate)

    out = [target] + picked
    _rng.shuffle(out)
    return out
