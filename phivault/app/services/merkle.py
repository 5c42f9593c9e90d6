"""
Merkle trees over batches of records.

Construction:
- leaf = SHA-256(0x00 || canonical_bytes(element))
- parent = SHA-256(0x01 || left_hex || right_hex) over the ASCII hex digests
- a lone node at the end of an odd-width level is promoted unchanged to the
  next level (never duplicated)

The distinct leaf and node prefixes keep an internal node's preimage from
verifying as a leaf.

Proofs are ordered from the leaf upwards. Each step is
{"position": "left" | "right", "hash": <hex>} naming the side the sibling
sits on. Promoted levels contribute no step.

Empty input has root None and depth 0; one element has root
leaf_hash(element) and depth 0.
"""

import hmac
import re
from typing import Any, Dict, List, Optional, Sequence

from phivault.app.errors import InvalidInputError
from phivault.app.services.hashing import canonical_bytes, sha256_hex

_HEX64 = re.compile(r"^[0-9a-f]{64}$")

LEAF_PREFIX = b"\x00"
NODE_PREFIX = b"\x01"


def leaf_hash(element: Any) -> str:
    return sha256_hex(LEAF_PREFIX + canonical_bytes(element))


def hash_pair(left: str, right: str) -> str:
    return sha256_hex(NODE_PREFIX + (left + right).encode("ascii"))


class MerkleTree:
    """Merkle tree built bottom-up from an ordered sequence of elements."""

    def __init__(self, elements: Sequence[Any]):
        self.leaves: List[str] = [leaf_hash(element) for element in elements]
        self.levels: List[List[str]] = []
        if self.leaves:
            self._build()

    def _build(self) -> None:
        level = list(self.leaves)
        self.levels.append(level)
        while len(level) > 1:
            parents = []
            for i in range(0, len(level) - 1, 2):
                parents.append(hash_pair(level[i], level[i + 1]))
            if len(level) % 2 == 1:
                parents.append(level[-1])
            self.levels.append(parents)
            level = parents

    @property
    def root(self) -> Optional[str]:
        if not self.levels:
            return None
        return self.levels[-1][0]

    @property
    def depth(self) -> int:
        return max(len(self.levels) - 1, 0)

    @property
    def leaf_count(self) -> int:
        return len(self.leaves)

    def summary(self) -> Dict[str, Any]:
        return {"root": self.root, "depth": self.depth, "leaf_count": self.leaf_count}

    def generate_proof(self, index: int) -> List[Dict[str, str]]:
        """
        Sibling-hash path from leaf `index` to the root.

        Raises:
            InvalidInputError: If index is out of range
        """
        if isinstance(index, bool) or not isinstance(index, int):
            raise InvalidInputError("Leaf index must be an integer")
        if index < 0 or index >= self.leaf_count:
            raise InvalidInputError(
                "Leaf index out of range", {"index": index, "leaf_count": self.leaf_count}
            )

        proof = []
        position = index
        for level in self.levels[:-1]:
            if position % 2 == 1:
                proof.append({"position": "left", "hash": level[position - 1]})
            elif position + 1 < len(level):
                proof.append({"position": "right", "hash": level[position + 1]})
            # else: lone node, promoted without a sibling
            position //= 2
        return proof


def build_merkle_tree(elements: Sequence[Any]) -> MerkleTree:
    return MerkleTree(elements)


def verify_proof(leaf: Any, proof: Any, root: Any) -> bool:
    """
    Recompute the path from `leaf` and compare with `root`.

    Malformed proofs (wrong container, unknown position, non-hex or
    wrong-length hashes) verify as False and never raise.
    """
    if not isinstance(root, str) or not _HEX64.match(root):
        return False
    if not isinstance(proof, (list, tuple)):
        return False

    try:
        current = leaf_hash(leaf)
    except InvalidInputError:
        return False

    for step in proof:
        if not isinstance(step, dict):
            return False
        sibling = step.get("hash")
        position = step.get("position")
        if not isinstance(sibling, str) or not _HEX64.match(sibling):
            return False
        if position == "left":
            current = hash_pair(sibling, current)
        elif position == "right":
            current = hash_pair(current, sibling)
        else:
            return False

    return hmac.compare_digest(current, root)
