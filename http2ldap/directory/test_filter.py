from __future__ import annotations
from unittest import TestCase
from pyasn1.codec.ber import decoder

from .errors import FilterSyntaxError
from .filter import fill_filter, unescape
from .protocol import Filter, LDAPMessage, encode_search_request


def compile_filter(text: str):
    return fill_filter(text, Filter())


class SimpleFilterTest(TestCase):
    def test_equality(self):
        fil = compile_filter("(uid=euler)")
        self.assertEqual(fil.getName(), "equalityMatch")
        ava = fil["equalityMatch"]
        self.assertEqual(ava["attributeDesc"].asOctets(), b"uid")
        self.assertEqual(ava["assertionValue"].asOctets(), b"euler")

    def test_without_parentheses(self):
        fil = compile_filter("objectClass=*")
        self.assertEqual(fil.getName(), "present")
        self.assertEqual(fil["present"].asOctets(), b"objectClass")

    def test_present(self):
        fil = compile_filter("(objectClass=*)")
        self.assertEqual(fil.getName(), "present")

    def test_comparisons(self):
        for text, name in (
            ("(uidNumber>=1000)", "greaterOrEqual"),
            ("(uidNumber<=1000)", "lessOrEqual"),
            ("(cn~=eular)", "approxMatch"),
        ):
            fil = compile_filter(text)
            self.assertEqual(fil.getName(), name, msg=text)

    def test_escaped_value(self):
        fil = compile_filter(r"(cn=\2a\28x\29)")
        self.assertEqual(fil.getName(), "equalityMatch")
        self.assertEqual(
            fil["equalityMatch"]["assertionValue"].asOctets(), b"*(x)"
        )

    def test_attribute_options(self):
        fil = compile_filter("(cn;lang-de=Euler)")
        self.assertEqual(
            fil["equalityMatch"]["attributeDesc"].asOctets(), b"cn;lang-de"
        )

    def test_unescape(self):
        self.assertEqual(unescape(r"a\5cb"), b"a\\b")
        self.assertEqual(unescape("Gauß"), "Gauß".encode())


class SubstringFilterTest(TestCase):
    def test_initial_any_final(self):
        fil = compile_filter("(cn=Le*nh*rd*Eu*)")
        self.assertEqual(fil.getName(), "substrings")
        sub = fil["substrings"]
        self.assertEqual(sub["type"].asOctets(), b"cn")
        parts = [
            (part.getName(), part.getComponent().asOctets())
            for part in sub["substrings"]
        ]
        self.assertEqual(
            parts,
            [("initial", b"Le"), ("any", b"nh"), ("any", b"rd"), ("any", b"Eu")],
        )

    def test_final_only(self):
        fil = compile_filter("(mail=*@example.com)")
        parts = [
            (part.getName(), part.getComponent().asOctets())
            for part in fil["substrings"]["substrings"]
        ]
        self.assertEqual(parts, [("final", b"@example.com")])


class CompositeFilterTest(TestCase):
    def test_and_or(self):
        fil = compile_filter("(&(objectClass=person)(|(uid=euler)(mail=e*)))")
        self.assertEqual(fil.getName(), "and")
        operands = fil["and"]
        self.assertEqual(len(operands), 2)
        self.assertEqual(operands[0].getName(), "equalityMatch")
        self.assertEqual(operands[1].getName(), "or")
        self.assertEqual(
            [op.getName() for op in operands[1]["or"]],
            ["equalityMatch", "substrings"],
        )

    def test_not(self):
        fil = compile_filter("(!(uid=gauss))")
        self.assertEqual(fil.getName(), "not")
        self.assertEqual(fil["not"].getName(), "equalityMatch")

    def test_nested_too_deeply(self):
        text = "(!" * 12 + "(uid=gauss)" + ")" * 12
        with self.assertRaises(FilterSyntaxError):
            compile_filter(text)


class ExtensibleFilterTest(TestCase):
    def test_attribute_and_rule(self):
        fil = compile_filter("(cn:caseExactMatch:=Fred)")
        self.assertEqual(fil.getName(), "extensibleMatch")
        mra = fil["extensibleMatch"]
        self.assertEqual(mra["type"].asOctets(), b"cn")
        self.assertEqual(mra["matchingRule"].asOctets(), b"caseExactMatch")
        self.assertEqual(mra["matchValue"].asOctets(), b"Fred")

    def test_dn_attributes(self):
        fil = compile_filter("(:dn:2.4.6.8.10:=Dino)")
        mra = fil["extensibleMatch"]
        self.assertTrue(mra["dnAttributes"])
        self.assertEqual(mra["matchingRule"].asOctets(), b"2.4.6.8.10")


class InvalidFilterTest(TestCase):
    def test_invalid(self):
        for text in ("(uid=euler", "(&)", "((uid=euler))", "(=euler)", ""):
            with self.assertRaises(FilterSyntaxError, msg=text):
                compile_filter(text)


class SearchRequestTest(TestCase):
    def test_encode(self):
        data = encode_search_request(
            7,
            "ou=mathematicians,dc=example,dc=com",
            2,
            "(&(objectClass=person)(!(uid=gauss)))",
            time_limit=5,
        )
        lm, rest = decoder.decode(data, asn1Spec=LDAPMessage())
        self.assertEqual(rest, b"")
        self.assertEqual(int(lm["messageID"]), 7)
        request = lm["protocolOp"]["searchRequest"]
        self.assertEqual(
            request["baseObject"].asOctets(),
            b"ou=mathematicians,dc=example,dc=com",
        )
        self.assertEqual(int(request["scope"]), 2)
        self.assertEqual(int(request["timeLimit"]), 5)
        self.assertEqual(len(request["attributes"]), 0)
        self.assertEqual(request["filter"].getName(), "and")
