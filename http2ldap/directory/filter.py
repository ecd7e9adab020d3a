"""Compiles filter strings into the Filter type of a SearchRequest.

See RFC4515 String Representation of Search Filters
"""

from __future__ import annotations
import re
from parsimonious.grammar import Grammar
from parsimonious.exceptions import ParseError
from parsimonious.nodes import Node
from pyasn1.type import univ

from .errors import FilterSyntaxError

_filter_grammar = Grammar(
    r"""
    filter          = "(" filtercomp ")"
    filtercomp      = and / or / not / item
    and             = "&" filterlist
    or              = "|" filterlist
    not             = "!" filter
    filterlist      = filter+
    item            = substring / simple / extensible
    simple          = attr filtertype value
    filtertype      = "~=" / ">=" / "<=" / "="
    extensible      = extensible_attr / extensible_rule
    extensible_attr = attr dnattrs? rule? ":=" value
    extensible_rule = dnattrs? rule ":=" value
    substring       = attr "=" value? any value?
    any             = "*" (value "*")*
    dnattrs         = ":dn"
    rule            = ":" oid
    attr            = ~r"([A-Za-z][A-Za-z0-9-]*|[0-9]+(\.[0-9]+)+)(;[A-Za-z0-9-]+)*"
    oid             = ~r"[A-Za-z][A-Za-z0-9-]*|[0-9]+(\.[0-9]+)+"
    value           = ~r"([^\x00()*\\]|\\[0-9A-Fa-f]{2})*"
    """
)

_escaped = re.compile(rb"\\([0-9A-Fa-f]{2})")

_simple_ops = {
    "=": "equalityMatch",
    "~=": "approxMatch",
    ">=": "greaterOrEqual",
    "<=": "lessOrEqual",
}


def unescape(value: str) -> bytes:
    """Replace ``\\XX`` hex escapes with the bytes they stand for"""
    return _escaped.sub(
        lambda m: bytes.fromhex(m.group(1).decode()), value.encode()
    )


def fill_filter(filter_str: str, fil: univ.Choice) -> univ.Choice:
    """
    Parse `filter_str` and set the components of the empty `fil`

    Like most clients, a filter without the outer parentheses
    (``objectClass=*``) is accepted.
    """
    text = filter_str.strip()
    if not text.startswith("("):
        text = f"({text})"
    try:
        node = _filter_grammar.parse(text)
    except ParseError as e:
        raise FilterSyntaxError(f"invalid filter {filter_str!r}: {e}") from e
    _fill(node, fil)
    return fil


def _fill(node: Node, fil: univ.Choice) -> None:
    comp = node.children[1].children[0]
    name = comp.expr_name
    if name in ("and", "or", "not"):
        if name not in fil.componentType:
            raise FilterSyntaxError("filter is nested too deeply")
        fil.setComponentByName(name)
        if name == "not":
            _fill(comp.children[1], fil.getComponentByName(name))
            return
        operands = fil.getComponentByName(name)
        for idx, child in enumerate(comp.children[1].children):
            _fill(child, operands.getComponentByPosition(idx))
    elif name == "item":
        item = comp.children[0]
        if item.expr_name == "simple":
            _fill_simple(item, fil)
        elif item.expr_name == "substring":
            _fill_substring(item, fil)
        else:
            _fill_extensible(item.children[0], fil)
    else:
        raise FilterSyntaxError(f"unhandled filter component {name!r}")


def _fill_simple(node: Node, fil: univ.Choice) -> None:
    attr, filtertype, value = node.children
    op = _simple_ops[filtertype.text]
    ava = fil.setComponentByName(op).getComponentByName(op)
    ava["attributeDesc"] = attr.text
    ava["assertionValue"] = unescape(value.text)


def _fill_substring(node: Node, fil: univ.Choice) -> None:
    attr, _equals, initial, any_node, final = node.children
    pieces: list[tuple[str, bytes]] = []
    if initial.text:
        pieces.append(("initial", unescape(initial.text)))
    for repetition in any_node.children[1].children:
        if value := repetition.children[0].text:
            pieces.append(("any", unescape(value)))
    if final.text:
        pieces.append(("final", unescape(final.text)))

    if not pieces:  # (attr=*)
        fil.setComponentByName("present", attr.text)
        return

    sub = fil.setComponentByName("substrings").getComponentByName(
        "substrings"
    )
    sub["type"] = attr.text
    parts = sub.setComponentByName("substrings").getComponentByName(
        "substrings"
    )
    for idx, (kind, value) in enumerate(pieces):
        parts.getComponentByPosition(idx).setComponentByName(kind, value)


def _fill_extensible(node: Node, fil: univ.Choice) -> None:
    mra = fil.setComponentByName("extensibleMatch").getComponentByName(
        "extensibleMatch"
    )
    if node.expr_name == "extensible_attr":
        attr, dnattrs, rule, _assign, value = node.children
        mra["type"] = attr.text
    else:
        dnattrs, rule, _assign, value = node.children
    if rule.text:
        mra["matchingRule"] = rule.text[1:]
    mra["matchValue"] = unescape(value.text)
    if dnattrs.text:
        mra["dnAttributes"] = True
