import math

import pytest

import api_server
from api_server import ValidationError, map_sales_rows, parse_money, parse_sales_upload


def export_row(name, commission, sub_id=""):
    return {"Nome do Item": name, "Comissão líquida do afiliado(R$)": commission, "Sub_id1": sub_id}


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("R$ 1.234,56", 1234.56),
        ("135,27", 135.27),
        ("1234.5", 1234.5),
        ("1234", 1234.0),
        (" R$ 7,00 ", 7.0),
        (42, 42.0),
        (3.5, 3.5),
        ("invalid", 0.0),
        ("", 0.0),
        (None, 0.0),
        (float("nan"), 0.0),
    ],
)
def test_parse_money(raw, expected):
    assert parse_money(raw) == pytest.approx(expected)


def test_parse_money_digits_as_cents():
    assert parse_money("1234", digits_as_cents=True) == pytest.approx(12.34)
    assert parse_money("12,34", digits_as_cents=True) == pytest.approx(12.34)


def test_parse_money_follows_setting(monkeypatch):
    monkeypatch.setattr(api_server, "CURRENCY_DIGITS_AS_CENTS", True)
    assert parse_money("500") == pytest.approx(5.0)


def test_map_drops_rows_without_product_name():
    rows = [
        export_row("Camiseta", "10,50", "REF1"),
        export_row("", "5,00", "REF1"),
        export_row("nan", "3,00"),
        export_row("Tênis", "20,00"),
    ]
    mapped = map_sales_rows(rows, "2024-05-10")

    assert len(mapped.records) == 2
    assert mapped.discarded == 2
    assert mapped.zeroed_revenue == 0
    first, second = mapped.records.to_dict(orient="records")
    assert first["product_name"] == "Camiseta"
    assert first["referral_id"] == "REF1"
    assert first["revenue"] == pytest.approx(10.5)
    assert first["quantity"] == 1
    assert first["date"] == "2024-05-10"
    assert second["referral_id"] is None


def test_map_zeroes_unparseable_revenue():
    mapped = map_sales_rows([export_row("Bolsa", "abc", "REF9"), export_row("Meias", "")], "2024-05-10")

    assert mapped.records["revenue"].tolist() == [0.0, 0.0]
    assert mapped.zeroed_revenue == 1
    assert mapped.discarded == 0


def test_map_uses_fallback_revenue_header_and_bom():
    rows = [{"\ufeffNome do Item": "Calça", "Comissão líquida do afiliado": "7,25", "Sub_id1": "REF2"}]
    mapped = map_sales_rows(rows, "2024-05-10")

    record = mapped.records.to_dict(orient="records")[0]
    assert record["product_name"] == "Calça"
    assert record["revenue"] == pytest.approx(7.25)


def test_map_missing_optional_columns():
    mapped = map_sales_rows([{"Nome do Item": "Boné"}], "2024-05-10")

    record = mapped.records.to_dict(orient="records")[0]
    assert record["revenue"] == 0.0
    assert record["referral_id"] is None


def test_map_counts_non_dict_rows_as_discarded():
    mapped = map_sales_rows([export_row("Camiseta", "1,00", "REF1"), "garbage", None], "2024-05-10")

    assert len(mapped.records) == 1
    assert mapped.discarded == 2


def test_map_empty_input():
    mapped = map_sales_rows([], "2024-05-10")

    assert mapped.records.empty
    assert list(mapped.records.columns) == api_server.SALES_COLUMNS
    assert mapped.discarded == 0


def test_map_never_emits_more_rows_than_received():
    rows = [export_row(f"Item {i}", f"{i},00", "REF1" if i % 2 else "") for i in range(10)]
    rows += [export_row("", "1,00")] * 3
    mapped = map_sales_rows(rows, "2024-05-10")

    assert len(mapped.records) + mapped.discarded == len(rows)
    assert not any(isinstance(v, float) and math.isnan(v) for v in mapped.records["product_name"])


@pytest.mark.parametrize("reference_date", [None, "", "10/05/2024"])
def test_map_requires_valid_reference_date(reference_date):
    with pytest.raises(ValidationError) as exc:
        map_sales_rows([export_row("Camiseta", "1,00")], reference_date)
    assert exc.value.field == "reference_date"


def test_parse_csv_upload():
    content = 'Nome do Item,Comissão líquida do afiliado(R$),Sub_id1\nCamiseta,"10,50",REF1\nTênis,"20,00",\n'
    rows = parse_sales_upload("vendas.csv", content.encode("utf-8"))

    assert len(rows) == 2
    assert rows[0]["Comissão líquida do afiliado(R$)"] == "10,50"
    assert rows[1]["Sub_id1"] == ""


def test_parse_latin1_csv_upload():
    content = "Nome do Item,Sub_id1\nCalça,REF1\n"
    rows = parse_sales_upload("vendas.csv", content.encode("latin1"))

    assert rows[0]["Nome do Item"] == "Calça"


def test_parse_upload_rejects_unknown_extension():
    with pytest.raises(ValidationError):
        parse_sales_upload("vendas.txt", b"whatever")


def test_parse_upload_rejects_broken_xlsx():
    with pytest.raises(ValidationError):
        parse_sales_upload("vendas.xlsx", b"not a zip file")


def test_map_keeps_numeric_sub_ids_as_sent():
    rows = [
        {"Nome do Item": "Camiseta", "Comissão líquida do afiliado(R$)": 10.5, "Sub_id1": 123},
        {"Nome do Item": "Tênis", "Comissão líquida do afiliado(R$)": 20, "Sub_id1": None},
        {"Nome do Item": 4521, "Comissão líquida do afiliado(R$)": "1,00", "Sub_id1": "REF1"},
    ]
    mapped = map_sales_rows(rows, "2024-05-10")

    records = mapped.records.to_dict(orient="records")
    assert [r["referral_id"] for r in records] == ["123", None, "REF1"]
    assert records[2]["product_name"] == "4521"
    assert [r["revenue"] for r in records] == pytest.approx([10.5, 20.0, 1.0])


def test_map_absent_sub_id_is_none():
    rows = [export_row("Camiseta", "1,00", "REF1"), {"Nome do Item": "Meias", "Comissão líquida do afiliado(R$)": "2,00"}]
    mapped = map_sales_rows(rows, "2024-05-10")

    assert mapped.records["referral_id"].tolist() == ["REF1", None]


def test_map_revenue_matches_parse_money():
    amounts = ["R$ 1.234,56", "135,27", "1234", "1234.5", " 7,00 ", 42, "abc", True]
    rows = [export_row(f"Item {i}", amount) for i, amount in enumerate(amounts)]

    for cents in (False, True):
        mapped = map_sales_rows(rows, "2024-05-10", digits_as_cents=cents)
        expected = [parse_money(a, digits_as_cents=cents) for a in amounts]
        assert mapped.records["revenue"].tolist() == pytest.approx(expected)
        assert mapped.zeroed_revenue == 2
