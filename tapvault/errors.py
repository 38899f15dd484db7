"""
Failure taxonomy for the vault pipeline.

Every error carries a stable `code` so that callers (CLI, an HTTP layer, logs) can
distinguish "not ready yet" from "fundamentally wrong" without string matching.
"""


class VaultError(Exception):
    code = "vault_error"
    retryable = False

    def __init__(self, msg: str = "", **context):
        self.context = context
        super().__init__(msg or self.code)

    def to_dict(self) -> dict:
        return {"error": self.code, "message": str(self), **self.context}


# Input / validation errors: rejected immediately, never retried.

class InputError(VaultError):
    code = "invalid_input"


class InvalidKeyEncoding(InputError):
    code = "invalid_key_encoding"


class MalformedTransaction(InputError):
    code = "malformed_transaction"


class InvalidVaultId(InputError):
    code = "invalid_vault_id"


class InvalidSignatureEncoding(InputError):
    code = "invalid_signature_encoding"


class DescriptorMismatch(InputError):
    code = "descriptor_mismatch"


# Structural Taproot mismatches.

class TaprootMismatch(VaultError):
    code = "taproot_mismatch"


class VaultInputMissing(TaprootMismatch):
    code = "vault_input_missing"


class ProtocolLeafNotFound(TaprootMismatch):
    code = "protocol_leaf_not_found"


class UnsupportedLeafVersion(TaprootMismatch):
    code = "unsupported_leaf_version"


class BadControlBlock(TaprootMismatch):
    code = "bad_control_block"


class MissingPrevout(TaprootMismatch):
    code = "missing_prevout"


class UserSignatureMissing(TaprootMismatch):
    code = "user_signature_missing"


class UserSignatureWrongLeaf(TaprootMismatch):
    code = "user_signature_for_different_leaf"


class SignatureHashTypeMismatch(TaprootMismatch):
    code = "signature_hash_type_mismatch"


class WitnessVerificationFailed(TaprootMismatch):
    code = "witness_verification_failed"


# Transient collaborator failures.

class CollaboratorError(VaultError):
    code = "collaborator_unavailable"
    retryable = True


class NodeUnavailable(CollaboratorError):
    code = "node_unavailable"


class WalletRescanTimeout(CollaboratorError):
    code = "wallet_rescan_timeout"


class OracleUnavailable(CollaboratorError):
    code = "oracle_unavailable"


class PriceFeedUnavailable(CollaboratorError):
    code = "price_feed_unavailable"


# Terminal conflicts.

class VaultConflict(VaultError):
    code = "vault_conflict"


class VaultAlreadyWithdrawn(VaultConflict):
    code = "vault_already_withdrawn"


class VaultExists(VaultConflict):
    code = "vault_exists"


# Lifecycle.

class VaultNotFound(VaultError):
    code = "vault_not_found"


class VaultNotMinted(VaultError):
    code = "vault_txid_missing"


class WithdrawFinalizeIncomplete(VaultError):
    code = "withdraw_finalize_incomplete"


class OracleRejected(VaultError):
    code = "oracle_rejected"


class RedemptionOutputsNotFound(VaultError):
    code = "vault_outputs_not_found"
