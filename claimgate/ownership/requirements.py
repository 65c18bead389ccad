"""
Asset ownership requirement trees.

    Node := Requirement{assets, options} | AndGroup{$and} | OrGroup{$or}

parse_requirement_tree() is the shape gate: it validates every clause of the
whole tree and fills default ownership times, raising IntegrityError before
the evaluator issues a single lookup.
"""

from typing import Annotated, Any, List, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from claimgate.errors import IntegrityError
from claimgate.ownership.ranges import UintRange

LISTS_COLLECTION = "BitBadges Lists"
SUPPORTED_CHAINS = ("BitBadges",)


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _check_ranges(ranges: List[Any], what: str) -> None:
    for r in ranges:
        if isinstance(r, UintRange) and not r.is_valid():
            raise ValueError(f"{what} must be non-negative ranges with start <= end")


# =============================================================================
# CLAUSES
# =============================================================================

class AssetClause(_Model):
    chain: str = "BitBadges"
    collection_id: Union[int, str]
    asset_ids: List[Union[UintRange, str]]
    ownership_times: List[UintRange] = Field(default_factory=list)
    must_own_amounts: UintRange

    @field_validator("chain")
    @classmethod
    def _supported_chain(cls, value: str) -> str:
        if value not in SUPPORTED_CHAINS:
            raise ValueError(f"Only {', '.join(SUPPORTED_CHAINS)} assets are supported")
        return value

    @field_validator("ownership_times", mode="before")
    @classmethod
    def _empty_times(cls, value: Any) -> Any:
        return value or []

    @model_validator(mode="after")
    def _check_shape(self) -> "AssetClause":
        _check_ranges([self.must_own_amounts], "mustOwnAmounts")
        _check_ranges(self.ownership_times, "ownershipTimes")
        amounts = self.must_own_amounts

        if self.is_list:
            if amounts.start not in (0, 1):
                raise ValueError("mustOwnAmount must be 0 or 1 for BitBadges Lists")
            if amounts.start != amounts.end:
                raise ValueError("mustOwnAmount must be the same start and end for "
                                 "BitBadges Lists (x0-0 or x1-1)")
            if not all(isinstance(x, str) for x in self.asset_ids):
                raise ValueError('For "BitBadges Lists" collection, all assetIds '
                                 'must be the list IDs as strings')
            return self

        try:
            collection_id = int(self.collection_id)
        except ValueError:
            raise ValueError(f"Invalid collectionId {self.collection_id!r}")
        if collection_id < 0:
            raise ValueError(f"Invalid collectionId {self.collection_id!r}")
        self.collection_id = collection_id
        if not all(isinstance(x, UintRange) for x in self.asset_ids):
            raise ValueError("assetIds must be UintRanges")
        _check_ranges(self.asset_ids, "assetIds")
        return self

    @property
    def is_list(self) -> bool:
        return self.collection_id == LISTS_COLLECTION


# =============================================================================
# NODES
# =============================================================================

class RequirementOptions(_Model):
    num_matches_for_verification: int = Field(default=0, ge=0)

    @field_validator("num_matches_for_verification", mode="before")
    @classmethod
    def _unset_is_zero(cls, value: Any) -> Any:
        return value or 0


class Requirement(_Model):
    assets: List[AssetClause]
    options: RequirementOptions = Field(default_factory=RequirementOptions)

    @field_validator("options", mode="before")
    @classmethod
    def _unset_options(cls, value: Any) -> Any:
        return value or {}

    @property
    def num_matches_for_verification(self) -> int:
        return self.options.num_matches_for_verification


class AndGroup(_Model):
    children: List["Node"] = Field(alias="$and")


class OrGroup(_Model):
    children: List["Node"] = Field(alias="$or")


def _node_kind(value: Any) -> str:
    if isinstance(value, dict):
        if "$and" in value:
            return "and"
        if "$or" in value:
            return "or"
        return "requirement"
    if isinstance(value, AndGroup):
        return "and"
    if isinstance(value, OrGroup):
        return "or"
    return "requirement"


Node = Annotated[
    Union[
        Annotated[AndGroup, Tag("and")],
        Annotated[OrGroup, Tag("or")],
        Annotated[Requirement, Tag("requirement")],
    ],
    Discriminator(_node_kind),
]

AndGroup.model_rebuild()
OrGroup.model_rebuild()

_NODE = TypeAdapter(Node)


# =============================================================================
# PARSING
# =============================================================================

def _describe(exc: ValidationError) -> str:
    err = exc.errors()[0]
    msg = str(err.get("msg", "Invalid ownership requirements"))
    if msg.startswith("Value error, "):
        msg = msg[len("Value error, "):]
    loc = ".".join(str(p) for p in err.get("loc", ()))
    return f"{msg} (at {loc})" if loc else msg


def _fill_ownership_times(node: Any, now_ms: int) -> None:
    if isinstance(node, (AndGroup, OrGroup)):
        for child in node.children:
            _fill_ownership_times(child, now_ms)
        return
    for clause in node.assets:
        if not clause.ownership_times:
            clause.ownership_times = [UintRange(now_ms, now_ms)]


def parse_requirement_tree(raw: Any, now_ms: int) -> Any:
    """Validate and normalize a whole requirement tree.

    Raises:
        IntegrityError: on the first malformed node or clause.
    """
    try:
        tree = _NODE.validate_python(raw)
    except ValidationError as exc:
        raise IntegrityError(_describe(exc)) from exc
    _fill_ownership_times(tree, now_ms)
    return tree


def is_empty(raw: Optional[Any]) -> bool:
    return raw is None or raw == {}
