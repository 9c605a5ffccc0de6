"""Bitcoin address classification.

Tells which network an address belongs to, which output script it pays to and how well it suits receiving runes. Taproot is preferred. Segwit works. Legacy addresses may lose runes with some wallets.

Base58Check legacy addresses are decoded with the `base58 <https://pypi.org/project/base58/>`_ library. Segwit addresses are decoded here following `BIP-173 <https://github.com/bitcoin/bips/blob/master/bip-0173.mediawiki>`_ (Bech32, witness version 0) and `BIP-350 <https://github.com/bitcoin/bips/blob/master/bip-0350.mediawiki>`_ (Bech32m, witness version 1 and up).

:py:func:`classify` never raises for bad input. Check ``valid`` and ``error`` of the result.
"""

import logging

import base58


logger = logging.getLogger(__name__)


MAINNET = "main"
TESTNET = "test"
REGTEST = "reg"

NETWORKS = (MAINNET, TESTNET, REGTEST)

_NETWORK_ALIASES = {
    "main": MAINNET,
    "mainnet": MAINNET,
    "bitcoin": MAINNET,
    "test": TESTNET,
    "testnet": TESTNET,
    "reg": REGTEST,
    "regtest": REGTEST,
}

P2PKH = "p2pkh"
P2SH = "p2sh"
P2WPKH = "p2wpkh"
P2WSH = "p2wsh"
P2TR = "p2tr"
UNKNOWN = "unknown"

SCRIPT_TYPES = (P2PKH, P2SH, P2WPKH, P2WSH, P2TR, UNKNOWN)

SEGWIT_SCRIPT_TYPES = (P2WPKH, P2WSH, P2TR)

#: Base58Check version byte -> (network, script type). Testnet versions are used by regtest too.
BASE58_VERSIONS = {
    0x00: (MAINNET, P2PKH),
    0x05: (MAINNET, P2SH),
    0x6f: (TESTNET, P2PKH),
    0xc4: (TESTNET, P2SH),
}

#: Bech32 human readable part -> network
BECH32_HRPS = {
    "bc": MAINNET,
    "tb": TESTNET,
    "bcrt": REGTEST,
}

RECOMMEND_TAPROOT = "optimal for rune transfer"
RECOMMEND_SEGWIT = "supported; taproot preferred"
RECOMMEND_LEGACY = "warning: may not reliably support rune transfer"

BECH32 = "bech32"
BECH32M = "bech32m"
BASE58 = "base58"

CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"

BECH32_CONST = 1
BECH32M_CONST = 0x2bc830a3

_LEGACY_PREFIXES = "13mn2"


class AddressError(Exception):
    """Decoding failed. Turned to ``AddressClassification.error`` by :py:func:`classify`."""


def normalize_network(name):
    """Map ``mainnet``, ``testnet``, ``regtest`` and the short forms to our network constants.

    :raise ValueError: Unknown network name
    """
    try:
        return _NETWORK_ALIASES[name.lower()]
    except (KeyError, AttributeError):
        raise ValueError("Unknown Bitcoin network {!r}".format(name))


def bech32_polymod(values):
    generator = [0x3b6a57b2, 0x26508e6d, 0x1ea119fa, 0x3d4233dd, 0x2a1462b3]
    chk = 1
    for value in values:
        top = chk >> 25
        chk = (chk & 0x1ffffff) << 5 ^ value
        for i in range(5):
            chk ^= generator[i] if ((top >> i) & 1) else 0
    return chk


def bech32_hrp_expand(hrp):
    return [ord(x) >> 5 for x in hrp] + [0] + [ord(x) & 31 for x in hrp]


def convertbits(data, frombits, tobits, pad=True):
    """Regroup a list of ``frombits`` wide integers to ``tobits`` wide integers.

    :return: List of integers or ``None`` if the padding is not valid
    """
    acc = 0
    bits = 0
    ret = []
    maxv = (1 << tobits) - 1
    max_acc = (1 << (frombits + tobits - 1)) - 1
    for value in data:
        if value < 0 or (value >> frombits):
            return None
        acc = ((acc << frombits) | value) & max_acc
        bits += frombits
        while bits >= tobits:
            bits -= tobits
            ret.append((acc >> bits) & maxv)
    if pad:
        if bits:
            ret.append((acc << (tobits - bits)) & maxv)
    elif bits >= frombits or ((acc << (tobits - bits)) & maxv):
        return None
    return ret


def bech32_decode(bech):
    """Split a Bech32 or Bech32m string to its parts and verify the checksum.

    :return: tuple (hrp, 5-bit data without checksum, encoding)
    """
    if any(ord(x) < 33 or ord(x) > 126 for x in bech):
        raise AddressError("invalid character in segwit address")

    if bech.lower() != bech and bech.upper() != bech:
        raise AddressError("mixed case segwit address")

    bech = bech.lower()
    pos = bech.rfind("1")
    if pos < 1 or pos + 7 > len(bech) or len(bech) > 90:
        raise AddressError("invalid segwit address length or separator position")

    if not all(x in CHARSET for x in bech[pos + 1:]):
        raise AddressError("invalid bech32 character")

    hrp = bech[:pos]
    data = [CHARSET.find(x) for x in bech[pos + 1:]]
    const = bech32_polymod(bech32_hrp_expand(hrp) + data)

    if const == BECH32_CONST:
        encoding = BECH32
    elif const == BECH32M_CONST:
        encoding = BECH32M
    else:
        raise AddressError("invalid bech32 checksum")

    return hrp, data[:-6], encoding


def decode_segwit(address):
    """Decode a segwit address.

    :return: tuple (network, witness version, witness program as bytes, encoding)
    """
    hrp, data, encoding = bech32_decode(address)

    if hrp not in BECH32_HRPS:
        raise AddressError("unknown segwit address prefix {!r}".format(hrp))

    if not data:
        raise AddressError("empty witness data")

    version = data[0]
    if version > 16:
        raise AddressError("invalid witness version {}".format(version))

    program = convertbits(data[1:], 5, 8, False)
    if program is None or len(program) < 2 or len(program) > 40:
        raise AddressError("invalid witness program length")

    if version == 0 and len(program) not in (20, 32):
        raise AddressError("invalid witness program length {} for witness version 0".format(len(program)))

    if version == 0 and encoding != BECH32:
        raise AddressError("witness version 0 must use bech32 checksum")

    if version != 0 and encoding != BECH32M:
        raise AddressError("witness version {} must use bech32m checksum".format(version))

    return BECH32_HRPS[hrp], version, bytes(program), encoding


def decode_base58(address):
    """Decode a Base58Check legacy address.

    :return: tuple (network, script type)
    """
    try:
        payload = base58.b58decode_check(address)
    except ValueError as e:
        raise AddressError("invalid base58 address: {}".format(e)) from e

    if len(payload) != 21:
        raise AddressError("invalid base58 payload length {}".format(len(payload)))

    version = payload[0]
    if version not in BASE58_VERSIONS:
        raise AddressError("unknown base58 version byte 0x{:02x}".format(version))

    return BASE58_VERSIONS[version]


class AddressClassification:
    """Result of :py:func:`classify`. Immutable."""

    __slots__ = ("address", "valid", "network", "script_type", "encoding", "error")

    def __init__(self, address, valid, network=None, script_type=UNKNOWN, encoding=None, error=None):
        object.__setattr__(self, "address", address)
        object.__setattr__(self, "valid", valid)
        object.__setattr__(self, "network", network)
        object.__setattr__(self, "script_type", script_type)
        object.__setattr__(self, "encoding", encoding)
        object.__setattr__(self, "error", error)

    def __setattr__(self, name, value):
        raise AttributeError("AddressClassification is immutable")

    @property
    def is_taproot(self):
        return self.script_type == P2TR

    @property
    def is_segwit(self):
        return self.script_type in SEGWIT_SCRIPT_TYPES

    @property
    def recommendation(self):
        if not self.valid:
            return None
        if self.is_taproot:
            return RECOMMEND_TAPROOT
        if self.is_segwit:
            return RECOMMEND_SEGWIT
        return RECOMMEND_LEGACY

    def to_dict(self):
        return dict(
            address=self.address,
            valid=self.valid,
            network=self.network,
            script_type=self.script_type,
            is_taproot=self.is_taproot,
            is_segwit=self.is_segwit,
            recommendation=self.recommendation,
            error=self.error)

    def __repr__(self):
        return "<AddressClassification {} valid:{} network:{} type:{} error:{}>".format(self.address, self.valid, self.network, self.script_type, self.error)


def _looks_like_segwit(address):
    lowered = address.lower()
    return any(lowered.startswith(hrp + "1") for hrp in BECH32_HRPS)


def _network_satisfies(network, encoding, required):
    if network == required:
        return True
    # Base58 testnet version bytes are shared with regtest
    return encoding == BASE58 and network == TESTNET and required == REGTEST


def classify(raw, require_network=None):
    """Classify a Bitcoin address.

    :param raw: Address string as typed by the user, surrounding whitespace is ignored

    :param require_network: Reject addresses of other networks. Accepts ``main``, ``test``, ``reg`` and ``mainnet``, ``testnet``, ``regtest``.

    :return: :py:class:`AddressClassification`
    """

    required = normalize_network(require_network) if require_network else None

    if not isinstance(raw, str) or not raw.strip():
        return AddressClassification(raw, False, error="address is required")

    address = raw.strip()

    try:
        network, script_type = decode_base58(address)
        encoding = BASE58
    except AddressError as base58_error:
        try:
            network, version, program, encoding = decode_segwit(address)
        except AddressError as segwit_error:
            if _looks_like_segwit(address):
                error = str(segwit_error)
            elif address[0] in _LEGACY_PREFIXES:
                error = str(base58_error)
            else:
                error = "unknown address format"
            return AddressClassification(address, False, error=error)

        if version == 0:
            script_type = P2WPKH if len(program) == 20 else P2WSH
        elif version == 1 and len(program) == 32:
            script_type = P2TR
        else:
            return AddressClassification(address, False, network=network, encoding=encoding, error="unsupported witness version {} with {} byte program".format(version, len(program)))

    if required and not _network_satisfies(network, encoding, required):
        return AddressClassification(address, False, network=network, script_type=script_type, encoding=encoding, error="address is for {} network, {} required".format(network, required))

    return AddressClassification(address, True, network=network, script_type=script_type, encoding=encoding)
