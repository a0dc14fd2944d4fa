"""Argument checks run before any statement is issued."""

from typing import Iterable, List, Mapping, Tuple, Union

from jobstore.errors import ArgumentError

HashPairs = Union[Mapping[str, str], Iterable[Tuple[str, str]]]


def require(name: str, value):
    if value is None:
        raise ArgumentError(name)


def job_pk(job_id: str) -> int:
    """Database key of a job id as handed out by create_job."""
    require("job_id", job_id)
    try:
        return int(job_id)
    except (TypeError, ValueError):
        raise ArgumentError("job_id", f"Job id {job_id!r} is not a valid identifier")


def hash_pairs(pairs: HashPairs) -> List[Tuple[str, str]]:
    require("pairs", pairs)
    items = list(pairs.items() if isinstance(pairs, Mapping) else pairs)
    for field, _ in items:
        require("field", field)
    return items
