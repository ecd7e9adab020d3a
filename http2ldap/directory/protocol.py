from __future__ import annotations
from typing import cast
import asyncio

# https://www.rfc-editor.org/rfc/rfc4511#appendix-B
# https://raw.githubusercontent.com/pyasn1/pyasn1-modules/02f9c577bcd0ad9fedfb0fd5dc598d323f7984bf/pyasn1_modules/rfc2251.py

from pyasn1.type import univ, tag, namedtype, namedval, constraint
from pyasn1.codec.ber import decoder, encoder
from pyasn1.error import PyAsn1Error
from .errors import UnsupportedOperation
from .filter import fill_filter

maxInt = univ.Integer(2147483647)
MAX_FILTER_DEPTH = 10
REFERRAL = 10
NO_SUCH_OBJECT = 32


def _context(tag_id: int, constructed: bool = False) -> tag.Tag:
    return tag.Tag(
        tag.tagClassContext,
        tag.tagFormatConstructed if constructed else tag.tagFormatSimple,
        tag_id,
    )


def _application(tag_id: int, constructed: bool = True) -> tag.Tag:
    return tag.Tag(
        tag.tagClassApplication,
        tag.tagFormatConstructed if constructed else tag.tagFormatSimple,
        tag_id,
    )


class MessageID(univ.Integer):
    subtypeSpec = univ.Integer.subtypeSpec + constraint.ValueRangeConstraint(
        0, maxInt
    )


class LDAPString(univ.OctetString):
    pass


class LDAPOID(univ.OctetString):
    pass


class AttributeValue(univ.OctetString):
    pass


class AttributeDescription(LDAPString):
    pass


class LDAPDN(LDAPString):
    pass


class URI(LDAPString):
    pass


class Attribute(univ.Sequence):
    componentType = namedtype.NamedTypes(
        namedtype.NamedType("type", AttributeDescription()),
        namedtype.NamedType(
            "vals", univ.SetOf(componentType=AttributeValue())
        ),
    )


class PartialAttributeList(univ.SequenceOf):
    componentType = Attribute()


class AttributeSelection(univ.SequenceOf):
    componentType = LDAPString()


class Referral(univ.SequenceOf):
    componentType = URI()


class Control(univ.Sequence):
    componentType = namedtype.NamedTypes(
        namedtype.NamedType("controlType", LDAPOID()),
        namedtype.DefaultedNamedType(
            "criticality", univ.Boolean().subtype(value=0)
        ),
        namedtype.OptionalNamedType("controlValue", univ.OctetString()),
    )


class Controls(univ.SequenceOf):
    componentType = Control()
    tagSet = univ.SequenceOf.tagSet.tagImplicitly(_context(0, True))


# fmt: off
class ResultCode(univ.Enumerated):
    namedValues = namedval.NamedValues(
        ("success", 0), ("operationsError", 1), ("protocolError", 2),
        ("timeLimitExceeded", 3), ("sizeLimitExceeded", 4),
        ("compareFalse", 5), ("compareTrue", 6),
        ("authMethodNotSupported", 7), ("strongAuthRequired", 8),
        ("referral", 10), ("adminLimitExceeded", 11),
        ("unavailableCriticalExtension", 12),
        ("confidentialityRequired", 13), ("saslBindInProgress", 14),
        ("noSuchAttribute", 16), ("undefinedAttributeType", 17),
        ("inappropriateMatching", 18), ("constraintViolation", 19),
        ("attributeOrValueExists", 20), ("invalidAttributeSyntax", 21),
        ("noSuchObject", 32), ("aliasProblem", 33), ("invalidDNSyntax", 34),
        ("aliasDereferencingProblem", 36),
        ("inappropriateAuthentication", 48), ("invalidCredentials", 49),
        ("insufficientAccessRights", 50), ("busy", 51), ("unavailable", 52),
        ("unwillingToPerform", 53), ("loopDetect", 54),
        ("namingViolation", 64), ("objectClassViolation", 65),
        ("notAllowedOnNonLeaf", 66), ("notAllowedOnRDN", 67),
        ("entryAlreadyExists", 68), ("objectClassModsProhibited", 69),
        ("affectsMultipleDSAs", 71), ("other", 80), ("canceled", 118),
        ("noSuchOperation", 119), ("tooLate", 120), ("cannotCancel", 121),
    )
# fmt: on


def _ldap_result_types(*extra: namedtype.NamedType) -> namedtype.NamedTypes:
    return namedtype.NamedTypes(
        namedtype.NamedType("resultCode", ResultCode()),
        namedtype.NamedType("matchedDN", LDAPDN()),
        namedtype.NamedType("diagnosticMessage", LDAPString()),
        namedtype.OptionalNamedType(
            "referral", Referral().subtype(implicitTag=_context(3, True))
        ),
        *extra,
    )


class LDAPResult(univ.Sequence):
    componentType = _ldap_result_types()


# --- Bind ---
class SaslCredentials(univ.Sequence):
    componentType = namedtype.NamedTypes(
        namedtype.NamedType("mechanism", LDAPString()),
        namedtype.OptionalNamedType("credentials", univ.OctetString()),
    )


class AuthenticationChoice(univ.Choice):
    componentType = namedtype.NamedTypes(
        namedtype.NamedType(
            "simple", univ.OctetString().subtype(implicitTag=_context(0))
        ),
        namedtype.NamedType(
            "sasl", SaslCredentials().subtype(implicitTag=_context(3, True))
        ),
    )


class BindRequest(univ.Sequence):
    tagSet = univ.Sequence.tagSet.tagImplicitly(_application(0))
    componentType = namedtype.NamedTypes(
        namedtype.NamedType(
            "version",
            univ.Integer().subtype(
                subtypeSpec=constraint.ValueRangeConstraint(1, 127)
            ),
        ),
        namedtype.NamedType("name", LDAPDN()),
        namedtype.NamedType("authentication", AuthenticationChoice()),
    )


class BindResponse(univ.Sequence):
    tagSet = univ.Sequence.tagSet.tagImplicitly(_application(1))
    componentType = _ldap_result_types(
        namedtype.OptionalNamedType(
            "serverSaslCreds",
            univ.OctetString().subtype(implicitTag=_context(7)),
        )
    )


class UnbindRequest(univ.Null):
    tagSet = univ.Null.tagSet.tagImplicitly(_application(2, False))


class AbandonRequest(MessageID):
    tagSet = univ.Integer.tagSet.tagImplicitly(_application(16, False))


# --- Filter ---
class AttributeValueAssertion(univ.Sequence):
    componentType = namedtype.NamedTypes(
        namedtype.NamedType("attributeDesc", AttributeDescription()),
        namedtype.NamedType("assertionValue", univ.OctetString()),
    )


class Substring(univ.Choice):
    componentType = namedtype.NamedTypes(
        namedtype.NamedType(
            "initial", univ.OctetString().subtype(implicitTag=_context(0))
        ),
        namedtype.NamedType(
            "any", univ.OctetString().subtype(implicitTag=_context(1))
        ),
        namedtype.NamedType(
            "final", univ.OctetString().subtype(implicitTag=_context(2))
        ),
    )


class SubstringFilter(univ.Sequence):
    componentType = namedtype.NamedTypes(
        namedtype.NamedType("type", AttributeDescription()),
        namedtype.NamedType(
            "substrings",
            univ.SequenceOf(componentType=Substring()),
        ),
    )


class MatchingRuleAssertion(univ.Sequence):
    componentType = namedtype.NamedTypes(
        namedtype.OptionalNamedType(
            "matchingRule", LDAPString().subtype(implicitTag=_context(1))
        ),
        namedtype.OptionalNamedType(
            "type", AttributeDescription().subtype(implicitTag=_context(2))
        ),
        namedtype.NamedType(
            "matchValue", univ.OctetString().subtype(implicitTag=_context(3))
        ),
        namedtype.DefaultedNamedType(
            "dnAttributes",
            univ.Boolean()
            .subtype(implicitTag=_context(4))
            .subtype(value=0),
        ),
    )


def _filter_choice(inner: type[univ.Choice] | None) -> type[univ.Choice]:
    """
    pyasn1 cannot express the recursive Filter type, so every nesting
    level gets its own Choice class wrapping the next one.
    """
    components = []
    if inner is not None:
        components += [
            namedtype.NamedType(
                "and",
                univ.SetOf(componentType=inner()).subtype(
                    implicitTag=_context(0, True)
                ),
            ),
            namedtype.NamedType(
                "or",
                univ.SetOf(componentType=inner()).subtype(
                    implicitTag=_context(1, True)
                ),
            ),
            namedtype.NamedType(
                "not", inner().subtype(implicitTag=_context(2, True))
            ),
        ]
    components += [
        namedtype.NamedType(
            "equalityMatch",
            AttributeValueAssertion().subtype(implicitTag=_context(3, True)),
        ),
        namedtype.NamedType(
            "substrings",
            SubstringFilter().subtype(implicitTag=_context(4, True)),
        ),
        namedtype.NamedType(
            "greaterOrEqual",
            AttributeValueAssertion().subtype(implicitTag=_context(5, True)),
        ),
        namedtype.NamedType(
            "lessOrEqual",
            AttributeValueAssertion().subtype(implicitTag=_context(6, True)),
        ),
        namedtype.NamedType(
            "present", AttributeDescription().subtype(implicitTag=_context(7))
        ),
        namedtype.NamedType(
            "approxMatch",
            AttributeValueAssertion().subtype(implicitTag=_context(8, True)),
        ),
        namedtype.NamedType(
            "extensibleMatch",
            MatchingRuleAssertion().subtype(implicitTag=_context(9, True)),
        ),
    ]
    return cast(
        type[univ.Choice],
        type(
            "Filter",
            (univ.Choice,),
            {"componentType": namedtype.NamedTypes(*components)},
        ),
    )


Filter: type[univ.Choice] = _filter_choice(None)
for _ in range(MAX_FILTER_DEPTH - 1):
    Filter = _filter_choice(Filter)


# --- Search ---
class SearchRequest(univ.Sequence):
    tagSet = univ.Sequence.tagSet.tagImplicitly(_application(3))
    componentType = namedtype.NamedTypes(
        namedtype.NamedType("baseObject", LDAPDN()),
        namedtype.NamedType(
            "scope",
            univ.Enumerated(
                namedValues=namedval.NamedValues(
                    ("baseObject", 0), ("singleLevel", 1), ("wholeSubtree", 2)
                )
            ),
        ),
        namedtype.NamedType(
            "derefAliases",
            univ.Enumerated(
                namedValues=namedval.NamedValues(
                    ("neverDerefAliases", 0),
                    ("derefInSearching", 1),
                    ("derefFindingBaseObj", 2),
                    ("derefAlways", 3),
                )
            ),
        ),
        namedtype.NamedType(
            "sizeLimit",
            univ.Integer().subtype(
                subtypeSpec=constraint.ValueRangeConstraint(0, maxInt)
            ),
        ),
        namedtype.NamedType(
            "timeLimit",
            univ.Integer().subtype(
                subtypeSpec=constraint.ValueRangeConstraint(0, maxInt)
            ),
        ),
        namedtype.NamedType("typesOnly", univ.Boolean()),
        namedtype.NamedType("filter", Filter()),
        namedtype.NamedType("attributes", AttributeSelection()),
    )


class SearchResultEntry(univ.Sequence):
    tagSet = univ.Sequence.tagSet.tagImplicitly(_application(4))
    componentType = namedtype.NamedTypes(
        namedtype.NamedType("objectName", LDAPDN()),
        namedtype.NamedType("attributes", PartialAttributeList()),
    )


class SearchResultDone(LDAPResult):
    tagSet = univ.Sequence.tagSet.tagImplicitly(_application(5))


class SearchResultReference(univ.SequenceOf):
    tagSet = univ.SequenceOf.tagSet.tagImplicitly(_application(19))
    componentType = URI()


class ExtendedResponse(univ.Sequence):
    tagSet = univ.Sequence.tagSet.tagImplicitly(_application(24))
    componentType = _ldap_result_types(
        namedtype.OptionalNamedType(
            "responseName", LDAPOID().subtype(implicitTag=_context(10))
        ),
        namedtype.OptionalNamedType(
            "responseValue",
            univ.OctetString().subtype(implicitTag=_context(11)),
        ),
    )


class ProtocolOp(univ.Choice):
    componentType = namedtype.NamedTypes(
        namedtype.NamedType("bindRequest", BindRequest()),
        namedtype.NamedType("bindResponse", BindResponse()),
        namedtype.NamedType("unbindRequest", UnbindRequest()),
        namedtype.NamedType("searchRequest", SearchRequest()),
        namedtype.NamedType("searchResEntry", SearchResultEntry()),
        namedtype.NamedType("searchResDone", SearchResultDone()),
        namedtype.NamedType("searchResRef", SearchResultReference()),
        namedtype.NamedType("abandonRequest", AbandonRequest()),
        namedtype.NamedType("extendedResp", ExtendedResponse()),
    )


class LDAPMessage(univ.Sequence):
    componentType = namedtype.NamedTypes(
        namedtype.NamedType("messageID", MessageID()),
        namedtype.NamedType("protocolOp", ProtocolOp()),
        namedtype.OptionalNamedType("controls", Controls()),
    )


def _message(msgid: int, op_name: str, op: univ.Asn1Item) -> bytes:
    lm = LDAPMessage()
    lm.setComponentByName("messageID", msgid)
    lm["protocolOp"].setComponentByName(op_name, op)
    return encoder.encode(lm)


# --- Requests, as sent by the client ---
def encode_bind_request(msgid: int, dn: str, password: str) -> bytes:
    br = BindRequest()
    br["version"] = 3
    br["name"] = dn
    br["authentication"].setComponentByName("simple", password.encode())
    return _message(msgid, "bindRequest", br)


def encode_search_request(
    msgid: int,
    base: str,
    scope: int,
    filter_str: str,
    attributes: tuple[str, ...] = (),
    size_limit: int = 0,
    time_limit: int = 0,
) -> bytes:
    """
    Raises `FilterSyntaxError` when `filter_str` is not an RFC 4515 filter
    """
    sr = SearchRequest()
    sr["baseObject"] = base
    sr["scope"] = scope
    sr["derefAliases"] = 0
    sr["sizeLimit"] = size_limit
    sr["timeLimit"] = time_limit
    sr["typesOnly"] = False
    fill_filter(
        filter_str, sr.setComponentByName("filter").getComponentByName("filter")
    )
    selection = sr.setComponentByName("attributes").getComponentByName(
        "attributes"
    )
    selection.clear()  # empty list selects all user attributes
    selection.extend(attributes)
    return _message(msgid, "searchRequest", sr)


def encode_abandon_request(msgid: int, abandoned_msgid: int) -> bytes:
    return _message(msgid, "abandonRequest", AbandonRequest(abandoned_msgid))


def encode_unbind_request(msgid: int) -> bytes:
    return _message(msgid, "unbindRequest", UnbindRequest(""))


# --- Responses, as sent by a server ---
def encode_bind_response(
    msgid: int, result_code: int = 0, matched_dn: str = "", diag: str = ""
) -> bytes:
    br = BindResponse()
    br["resultCode"] = result_code
    br["matchedDN"] = matched_dn
    br["diagnosticMessage"] = diag
    return _message(msgid, "bindResponse", br)


def encode_search_result_entry(
    msgid: int, dn: str, attributes: dict[str, str | list[str]]
) -> bytes:
    """Encode a SearchResultEntry response"""

    sre = SearchResultEntry()
    sre["objectName"] = dn

    attrs_seq = sre.setComponentByName("attributes").getComponentByName(
        "attributes"
    )
    attrs_seq.clear()
    for attr_type, values in attributes.items():
        attr = Attribute()
        attr["type"] = attr_type
        vals_set = univ.SetOf(componentType=AttributeValue())
        for value in values if isinstance(values, list) else [values]:
            vals_set.append(value.encode())
        attr["vals"] = vals_set
        attrs_seq.append(attr)

    return _message(msgid, "searchResEntry", sre)


def encode_search_result_reference(msgid: int, uris: list[str]) -> bytes:
    ref = SearchResultReference()
    ref.extend(uris)
    return _message(msgid, "searchResRef", ref)


def encode_search_result_done(
    msgid: int,
    result_code: int = 0,
    matched_dn: str = "",
    diag: str = "",
    referral: list[str] | None = None,
) -> bytes:
    """Encode a SearchResultDone response"""

    srd = SearchResultDone()
    srd["resultCode"] = result_code
    srd["matchedDN"] = matched_dn
    srd["diagnosticMessage"] = diag
    if referral:
        srd.setComponentByName("referral").getComponentByName(
            "referral"
        ).extend(referral)
    return _message(msgid, "searchResDone", srd)


# --- Framing ---
async def read_message(reader: asyncio.StreamReader) -> LDAPMessage:
    """
    Read exactly one BER encoded LDAPMessage from the stream

    Raises `asyncio.IncompleteReadError` when the peer closes the stream,
    `UnsupportedOperation` when only the message id decodes (the stream
    stays usable) and `pyasn1.error.PyAsn1Error` when nothing does.
    """
    header = await reader.readexactly(2)
    length = header[1]
    length_bytes = b""
    if length & 0x80:
        length_bytes = await reader.readexactly(length & 0x7F)
        length = int.from_bytes(length_bytes, "big")
    body = await reader.readexactly(length)
    try:
        lm, _rest = decoder.decode(
            header + length_bytes + body, asn1Spec=LDAPMessage()
        )
    except PyAsn1Error as e:
        # body holds the SEQUENCE contents, the message id comes first
        msgid, rest = decoder.decode(body, asn1Spec=MessageID())
        raise UnsupportedOperation(
            int(msgid),
            f"unsupported operation tag 0x{rest[:1].hex()}"
            f" in message #{msgid}",
        ) from e
    return cast(LDAPMessage, lm)
