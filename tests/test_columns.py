"""
Spreadsheet header classification and snapshot building.
"""
import pytest

from counting_api.exceptions import ValidationError
from counting_api.services.columns import classify_columns, snapshot_from_rows


class TestClassifyColumns:
    def test_erp_export_headers(self):
        headers = ["Item", "Desc. item", "GRUPO", "U.M.", "Código barras"]

        assert classify_columns(headers) == {
            "item": "Item",
            "description": "Desc. item",
            "group": "GRUPO",
            "unit": "U.M.",
            "barcode": "Código barras",
        }

    @pytest.mark.parametrize(
        "header",
        ["EAN", "ean13", "GTIN", "gtin14", "UPC", "Barcode", "Cod. barra principal", "CÓDIGO DE BARRAS"],
    )
    def test_barcode_spellings(self, header):
        assert classify_columns(["item", header])["barcode"] == header

    def test_bare_codigo_is_barcode_next_to_item(self):
        assert classify_columns(["ITEM", "Código"])["barcode"] == "Código"

    def test_bare_codigo_alone_is_not_barcode(self):
        assert "barcode" not in classify_columns(["Código", "Descripción"])

    def test_word_match_only(self):
        """'ean' inside another word is not a barcode column"""
        assert "barcode" not in classify_columns(["item", "oceanic"])

    def test_first_header_wins(self):
        roles = classify_columns(["item", "EAN", "Código barras"])
        assert roles["barcode"] == "EAN"

    def test_unknown_headers_are_ignored(self):
        assert classify_columns(["Precio", "Proveedor"]) == {}


class TestSnapshotFromRows:
    def test_items_first_occurrence_wins(self):
        rows = [
            {"Item": "100", "Desc. item": "Arroz", "GRUPO": "Granos", "U.M.": "UND", "Código barras": "7701"},
            {"Item": "100", "Desc. item": "Arroz x6", "GRUPO": "Granos", "U.M.": "P6", "Código barras": "7702"},
            {"Item": "200", "Desc. item": "", "GRUPO": "", "U.M.": "", "Código barras": ""},
        ]

        snapshot = snapshot_from_rows(rows)

        assert [(i.item_id, i.description, i.group) for i in snapshot.items] == [
            ("100", "Arroz", "Granos"),
            ("200", "No description", "No group"),
        ]
        assert [(b.barcode, b.item_id, b.unit_of_measure) for b in snapshot.barcodes] == [
            ("7701", "100", "UND"),
            ("7702", "100", "P6"),
        ]

    def test_numeric_cells(self):
        snapshot = snapshot_from_rows([{"item": 300, "ean": 7703}])
        assert snapshot.items[0].item_id == "300"
        assert snapshot.barcodes[0].barcode == "7703"
        assert snapshot.barcodes[0].unit_of_measure == "UND"

    def test_leading_zero_item_ids_are_rejected(self):
        rows = [{"Item": "100"}, {"Item": "0123"}, {"Item": "0456"}]

        with pytest.raises(ValidationError) as exc_info:
            snapshot_from_rows(rows)

        message = str(exc_info.value)
        assert "F3: 0123" in message
        assert "F4: 0456" in message
        assert exc_info.value.field == "Item"

    def test_at_most_eight_examples(self):
        rows = [{"Item": f"0{n}"} for n in range(12)]

        with pytest.raises(ValidationError) as exc_info:
            snapshot_from_rows(rows)

        assert str(exc_info.value).count("F") == 8

    def test_item_column_required(self):
        with pytest.raises(ValidationError):
            snapshot_from_rows([{"Código": "7701"}])

    def test_empty_sheet(self):
        with pytest.raises(ValidationError):
            snapshot_from_rows([])
