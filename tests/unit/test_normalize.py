from extraction_queue.extract.normalize import normalize_extraction, normalize_value

SCHEMA = {
    "type": "object",
    "properties": {
        "invoice_number": {"type": "string"},
        "total": {"type": "number"},
        "quantity": {"type": "integer"},
        "due_date": {"type": ["string", "null"]},
        "lines": {
            "type": "array",
            "items": {"type": "object", "properties": {"amount": {"type": "number"}}},
        },
    },
}


def test_numeric_strings_are_coerced_per_schema():
    out = normalize_extraction(
        {
            "invoice_number": "  INV-001 ",
            "total": "$ 1,234.50",
            "quantity": "3",
            "lines": [{"amount": "1.234,56"}, {"amount": 7}],
        },
        SCHEMA,
    )
    assert out["invoice_number"] == "INV-001"
    assert out["total"] == 1234.5
    assert out["quantity"] == 3
    assert out["lines"] == [{"amount": 1234.56}, {"amount": 7}]


def test_thousands_separator_without_decimals():
    assert normalize_value("1,234", {"type": "number"}) == 1234.0
    assert normalize_value("12,5", {"type": "number"}) == 12.5


def test_unparseable_number_is_left_for_validation():
    assert normalize_value("n/a", {"type": "number"}) == "n/a"


def test_none_and_unknown_keys_pass_through():
    out = normalize_extraction({"due_date": None, "extra": " keep "}, SCHEMA)
    assert out == {"due_date": None, "extra": "keep"}
