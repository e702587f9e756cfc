import unittest

from models import (
    EmptyList,
    InvoiceList,
    InvoiceStatus,
    MalformedResponse,
    NormalizedInvoice,
    decode_query_response,
    ids_equivalent,
    invoice_status,
    normalize_invoice_id,
)


class TestInvoiceIds(unittest.TestCase):
    def test_normalize_strips_decorations(self):
        self.assertEqual(normalize_invoice_id("inv-42"), "42")
        self.assertEqual(normalize_invoice_id("INV-42"), "42")
        self.assertEqual(normalize_invoice_id("#42"), "42")
        self.assertEqual(normalize_invoice_id("  42 "), "42")
        self.assertEqual(normalize_invoice_id(42), "42")

    def test_normalize_empty(self):
        self.assertEqual(normalize_invoice_id(None), "")
        self.assertEqual(normalize_invoice_id("  "), "")
        self.assertEqual(normalize_invoice_id("#"), "")

    def test_ids_equivalent(self):
        self.assertTrue(ids_equivalent("INV-42", "42"))
        self.assertTrue(ids_equivalent("042", 42))
        self.assertFalse(ids_equivalent("42", "43"))
        self.assertFalse(ids_equivalent("", ""))
        self.assertFalse(ids_equivalent("A-1", "1"))


class TestInvoiceStatus(unittest.TestCase):
    def test_paid_unpaid_partial(self):
        self.assertEqual(invoice_status(0, 100), InvoiceStatus.PAID)
        self.assertEqual(invoice_status(100, 100), InvoiceStatus.UNPAID)
        self.assertEqual(invoice_status(40, 100), InvoiceStatus.PARTIALLY_PAID)

    def test_float_noise_is_rounded(self):
        self.assertEqual(invoice_status(0.1 + 0.2, 0.3), InvoiceStatus.UNPAID)
        self.assertEqual(invoice_status(0.001, 10), InvoiceStatus.PAID)


class TestNormalizedInvoice(unittest.TestCase):
    RAW = {
        "Id": "42",
        "DocNumber": "INV-42",
        "CustomerRef": {"value": "7", "name": "Acme Corp"},
        "TxnDate": "2024-03-05",
        "DueDate": "2024-04-04",
        "TotalAmt": 150.0,
        "Balance": 50.0,
        "CustomerMemo": {"value": "Thanks for your business"},
        "CurrencyRef": {"value": "CAD"},
        "Line": [
            {"Id": "1", "Description": "Widget", "Amount": 150.0, "SalesItemLineDetail": {"Qty": 3, "UnitPrice": 50}},
            {"Amount": -5, "DetailType": "DiscountLineDetail"},
        ],
    }

    def test_from_quickbooks(self):
        invoice = NormalizedInvoice.from_quickbooks(self.RAW)
        self.assertEqual(invoice.id, "42")
        self.assertEqual(invoice.document_number, "INV-42")
        self.assertEqual(invoice.customer_name, "Acme Corp")
        self.assertEqual(invoice.currency, "CAD")
        self.assertEqual(invoice.memo, "Thanks for your business")
        self.assertEqual(invoice.status, InvoiceStatus.PARTIALLY_PAID)
        self.assertEqual(len(invoice.line_items), 2)
        self.assertEqual(invoice.line_items[0].quantity, 3)
        self.assertEqual(invoice.line_items[0].unit_price, 50)
        self.assertEqual(invoice.line_items[1].amount, 0.0)

    def test_to_dict_uses_camel_case(self):
        payload = NormalizedInvoice.from_quickbooks(self.RAW).to_dict()
        self.assertEqual(payload["documentNumber"], "INV-42")
        self.assertEqual(payload["customerName"], "Acme Corp")
        self.assertEqual(payload["totalAmount"], 150.0)
        self.assertEqual(payload["status"], "PartiallyPaid")
        self.assertEqual(payload["lineItems"][0]["unitPrice"], 50.0)

    def test_defaults_for_sparse_record(self):
        invoice = NormalizedInvoice.from_quickbooks({"Id": "9"})
        self.assertEqual(invoice.customer_name, "Unknown Customer")
        self.assertEqual(invoice.currency, "USD")
        self.assertEqual(invoice.status, InvoiceStatus.PAID)

    def test_unmappable_record_degrades(self):
        invoice = NormalizedInvoice.from_quickbooks({"Id": "9", "CustomerRef": "not-a-dict"})
        self.assertEqual(invoice.id, "9")
        self.assertEqual(invoice.customer_name, "Error parsing invoice")

    def test_matches_id_or_document_number(self):
        invoice = NormalizedInvoice.from_quickbooks(self.RAW)
        self.assertTrue(invoice.matches("inv-42"))
        self.assertTrue(invoice.matches("#42"))
        self.assertFalse(invoice.matches("43"))


class TestDecodeQueryResponse(unittest.TestCase):
    def test_invoice_list(self):
        envelope = decode_query_response({"QueryResponse": {"Invoice": [{"Id": "1"}], "maxResults": 1}})
        self.assertIsInstance(envelope, InvoiceList)
        self.assertEqual(envelope.invoices, [{"Id": "1"}])

    def test_empty(self):
        self.assertIsInstance(decode_query_response({"QueryResponse": {}}), EmptyList)
        self.assertIsInstance(decode_query_response({"QueryResponse": {"Invoice": []}}), EmptyList)

    def test_malformed(self):
        self.assertIsInstance(decode_query_response([]), MalformedResponse)
        self.assertIsInstance(decode_query_response({"unexpected": True}), MalformedResponse)
        self.assertIsInstance(decode_query_response({"QueryResponse": {"Invoice": {"Id": "1"}}}), MalformedResponse)

    def test_fault(self):
        envelope = decode_query_response({"Fault": {"Error": [{"code": "3200", "Message": "AuthenticationFailed"}]}})
        self.assertIsInstance(envelope, MalformedResponse)
        self.assertIn("3200", envelope.reason)


if __name__ == '__main__':
    unittest.main()
