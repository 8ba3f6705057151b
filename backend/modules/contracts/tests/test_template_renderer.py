from modules.contracts.services.template_renderer import (
    append_clauses,
    fill_placeholders,
    format_amount,
    render_contract,
)


def test_placeholders_ignore_inner_whitespace():
    text = "{{owner_name}} rents to {{  renter_name }}"
    assert fill_placeholders(text, {"owner_name": "An", "renter_name": "Binh"}) == "An rents to Binh"


def test_missing_values_render_empty():
    assert fill_placeholders("ID: {{ renter_id_card_number }}.", {}) == "ID: ."
    assert fill_placeholders("Qty {{ quantity }}", {"quantity": None}) == "Qty "


def test_non_string_values():
    assert fill_placeholders("{{ quantity }} unit(s)", {"quantity": 2}) == "2 unit(s)"


def test_single_braces_are_left_alone():
    assert fill_placeholders("{owner_name}", {"owner_name": "An"}) == "{owner_name}"


def test_clause_block():
    assert append_clauses("Body", "  Return cleaned.  ") == (
        "Body\n---\nADDITIONAL TERMS\nReturn cleaned.\n---"
    )
    assert append_clauses("Body", "   ") == "Body\n---\nADDITIONAL TERMS\nNo additional terms.\n---"


def test_render_contract_layout():
    content = render_contract(
        "Header {{ order_id }}",
        "Body for {{ item_title }}",
        "Footer {{ today }}",
        {"order_id": 7, "item_title": "Tent", "today": "01/02/2026"},
    )
    assert content == (
        "Header 7\n\n"
        "Body for Tent\n---\nADDITIONAL TERMS\nNo additional terms.\n---\n\n"
        "Footer 01/02/2026"
    )


def test_format_amount():
    assert format_amount(520000) == "520.000"
    assert format_amount(1234567) == "1.234.567"
    assert format_amount(None) == "0"
