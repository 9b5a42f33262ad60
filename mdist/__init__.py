"""
mdist: Merkle distributor: publish one root, redeem each entitlement once.

Architecture:
    Offline:  balances.json -> ordered leaves -> Merkle root + per-account proofs
    Online:   ClaimRegistry(token, root) verifies (index, account, amount, proof),
              flips a packed claimed bit and transfers the amount atomically
    Bridge:   mdist build / mdist verify CLI commands
"""

__version__ = "0.1.0"

# Leaf encoding: uint256 index (32) + address (20) + uint256 amount (32) = 84 bytes
HASH_SIZE = 32
ADDRESS_SIZE = 20
UINT256_SIZE = 32
LEAF_ENCODED_SIZE = UINT256_SIZE + ADDRESS_SIZE + UINT256_SIZE
UINT256_MAX = 2**256 - 1

# Claim bitmap: one uint256 storage word holds 256 claimed flags
BITMAP_WORD_BITS = 256

# Revert reasons, one per claim failure kind
REASON_INVALID_PROOF = "MerkleDistributor: Invalid proof."
REASON_ALREADY_CLAIMED = "MerkleDistributor: Drop already claimed."
REASON_INSUFFICIENT_FUNDS = "ERC20: transfer amount exceeds balance"

# Local state
DEFAULT_DATA_DIR = "~/.mdist"
DEFAULT_CONFIG_NAME = "config.toml"
AUDIT_DIR = "audit"  # subdirectory under the data dir
