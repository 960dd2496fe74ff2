from typing import Optional

# Plan limits are Optional[int]:
#   None -> unlimited
#   n    -> at most n (0 means none allowed)


def within_limit(limit: Optional[int], current_count: int) -> bool:
    """True if one more item fits under the limit."""
    if limit is None:
        return True
    return current_count < limit


def describe_limit(limit: Optional[int]) -> str:
    return "unlimited" if limit is None else str(limit)
