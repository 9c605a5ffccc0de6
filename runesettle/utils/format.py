"""Presentation helpers for addresses and amounts."""

from decimal import Decimal

from ..bitcoin import address


SCRIPT_TYPE_NAMES = {
    address.P2TR: "Taproot (P2TR)",
    address.P2WPKH: "Native SegWit (P2WPKH)",
    address.P2WSH: "Native SegWit (P2WSH)",
    address.P2SH: "Nested SegWit (P2SH)",
    address.P2PKH: "Legacy (P2PKH)",
    address.UNKNOWN: "Unknown",
}


def truncate_address(addr, chars=6):
    """Shorten an address for display, keeping ``chars`` characters from both ends."""
    if not addr or len(addr) <= chars * 2 + 3:
        return addr
    return "{}...{}".format(addr[:chars], addr[-chars:])


def describe_script_type(script_type):
    return SCRIPT_TYPE_NAMES.get(script_type, SCRIPT_TYPE_NAMES[address.UNKNOWN])


def format_sats(sats):
    """``12345`` -> ``0.00012345 BTC``"""
    return "{:.8f} BTC".format(Decimal(sats) / Decimal(100000000))
