"""
Construction of the vault's Taproot output.

Every vault commits to the same two-leaf tree, built in a fixed order so that the
leaf hash and Merkle root recomputed at withdrawal time match the mint-time
commitment bit-for-bit:

    internal key: guardian
    leaf 0 ("redeem"):  multi_a(2, protocol, user)
    leaf 1 ("recover"): multi_a(2, recovery_a, recovery_b)
"""
import logging
import typing as t
from dataclasses import dataclass
from functools import cached_property

from verystable.core import script
from verystable.core.script import CScript
from verystable.core.descriptors import descsum_create
from verystable.core.key import ECPubKey
from verystable.core.segwit_addr import encode_segwit_address
from verystable.core.address import address_to_scriptpubkey
from verystable.script import TaprootInfo

from .config import VaultConfig, NETWORK_HRPS
from .errors import InputError, InvalidKeyEncoding, DescriptorMismatch

if t.TYPE_CHECKING:
    from .node import NodeClient

log = logging.getLogger(__name__)

REDEEM_LEAF = "redeem"
RECOVER_LEAF = "recover"
TAPSCRIPT_LEAF_VERSION = script.LEAF_VERSION_TAPSCRIPT


def to_xonly(key: bytes | str, label: str = "key") -> bytes:
    """
    Normalize a public key to its 32-byte x-only form.

    Accepts an x-only key as-is, or a 33-byte compressed key (the parity prefix is
    dropped). Anything else, including an x coordinate that isn't on the curve,
    is rejected.
    """
    if isinstance(key, str):
        try:
            key = bytes.fromhex(key.strip())
        except ValueError:
            raise InvalidKeyEncoding(f"{label} is not valid hex", label=label)

    if len(key) == 32:
        xonly = bytes(key)
    elif len(key) == 33 and key[0] in (0x02, 0x03):
        xonly = bytes(key[1:])
    else:
        raise InvalidKeyEncoding(
            f"{label} must be 32-byte x-only or 33-byte compressed "
            f"(got {len(key)} bytes)", label=label)

    pubkey = ECPubKey()
    pubkey.set(b"\x02" + xonly)
    if not pubkey.is_valid:
        raise InvalidKeyEncoding(f"{label} is not a point on secp256k1", label=label)
    return xonly


def multi_a_2of2(first: bytes, second: bytes) -> CScript:
    """
    Tapscript 2-of-2, in the form Bitcoin Core emits for `multi_a(2,first,second)`.

    `first` checks against the top witness item, so a satisfying witness is
    [sig(second), sig(first), ...].
    """
    return CScript([
        first, script.OP_CHECKSIG,
        second, script.OP_CHECKSIGADD,
        2, script.OP_NUMEQUAL,
    ])  # yapf: disable


def xonly_to_address(output_pubkey: bytes, network: str) -> str:
    return encode_segwit_address(NETWORK_HRPS[network], 1, output_pubkey)


@dataclass(frozen=True)
class VaultDescriptor:
    """Script constructions and parameters for a single vault output."""

    internal_pubkey: bytes
    protocol_pubkey: bytes
    user_pubkey: bytes
    recovery_pubkeys: tuple[bytes, bytes]
    network: str = "regtest"

    @cached_property
    def redeem_script(self) -> CScript:
        return multi_a_2of2(self.protocol_pubkey, self.user_pubkey)

    @cached_property
    def recover_script(self) -> CScript:
        return multi_a_2of2(*self.recovery_pubkeys)

    @cached_property
    def taproot_info(self) -> TaprootInfo:
        return script.taproot_construct(
            self.internal_pubkey,
            scripts=[
                (REDEEM_LEAF, self.redeem_script),
                (RECOVER_LEAF, self.recover_script),
            ],
        )

    @property
    def merkle_root(self) -> bytes:
        return self.taproot_info.merkle_root

    @property
    def output_pubkey(self) -> bytes:
        return self.taproot_info.output_pubkey

    @property
    def scriptPubKey(self) -> CScript:
        return self.taproot_info.scriptPubKey

    def leaf_hash(self, name: str) -> bytes:
        return self.taproot_info.leaves[name].leaf_hash

    def controlblock(self, name: str) -> bytes:
        return self.taproot_info.controlblock_for_script_spend(name)

    @cached_property
    def descriptor(self) -> str:
        """The `tr()` descriptor, with checksum."""
        p, u = self.protocol_pubkey.hex(), self.user_pubkey.hex()
        a, b = (k.hex() for k in self.recovery_pubkeys)
        return descsum_create(
            f"tr({self.internal_pubkey.hex()},"
            f"{{multi_a(2,{p},{u}),multi_a(2,{a},{b})}})")

    @cached_property
    def address(self) -> str:
        return xonly_to_address(self.output_pubkey, self.network)


def build_vault_descriptor(
    config: VaultConfig,
    protocol_pubkey: bytes | str,
    user_pubkey: bytes | str,
    node: "NodeClient | None" = None,
) -> VaultDescriptor:
    """
    Build the vault's two-leaf tree, descriptor and address.

    If `node` is given, the address is also derived by the node from the
    descriptor and must agree with the locally computed one.
    """
    desc = VaultDescriptor(
        internal_pubkey=to_xonly(config.guardian_pubkey, "guardian_pubkey"),
        protocol_pubkey=to_xonly(protocol_pubkey, "protocol_pubkey"),
        user_pubkey=to_xonly(user_pubkey, "user_pubkey"),
        recovery_pubkeys=(
            to_xonly(config.recovery_pubkey_a, "recovery_pubkey_a"),
            to_xonly(config.recovery_pubkey_b, "recovery_pubkey_b"),
        ),
        network=config.network,
    )

    if node is not None:
        derived = node.derive_address(desc.descriptor)
        if derived != desc.address:
            raise DescriptorMismatch(
                f"node derived {derived}, expected {desc.address}",
                descriptor=desc.descriptor)

    log.info(
        "built vault descriptor (address=%s, redeem_leaf=%s, merkle_root=%s)",
        desc.address, desc.leaf_hash(REDEEM_LEAF).hex(), desc.merkle_root.hex())
    return desc


def scriptpubkey_for_address(address: str) -> CScript:
    """Output script for a segwit address on any network, or a testnet base58 one."""
    try:
        return CScript(address_to_scriptpubkey(address.strip()))
    except (AssertionError, ValueError) as e:
        raise InputError(f"unsupported address {address!r}", address=address) from e
