"""
Manual lookup: description search inside a run's scope, items by group.
"""
import pytest

from counting_api.exceptions import NotFoundError, ValidationError
from counting_api.services import lookup, runs

from conftest import A100_UND, C300_UND, make_run_request


class TestSearchScope:
    """Operators find unscannable products by description"""

    @pytest.mark.asyncio
    async def test_finds_item_in_scope(self, store, catalog, run):
        matches = await lookup.search_scope(store, catalog, run.id, "arroz")

        assert [(m.item_id, m.barcode) for m in matches] == [("A100", A100_UND)]

    @pytest.mark.asyncio
    async def test_every_word_must_match_ignoring_accents(self, store, catalog):
        # Given
        coffee = await runs.create_run(
            store,
            make_run_request(
                expected=[
                    {"item_id": "E900", "quantity": 3, "description": "Café Sello Rojo 250g"},
                    {"item_id": "E901", "quantity": 3, "description": "Café Águila Roja 250g"},
                ]
            ),
        )

        # When
        matches = await lookup.search_scope(store, catalog, coffee.id, "CAFE  rojo")

        # Then
        assert [m.item_id for m in matches] == ["E900"]
        assert matches[0].barcode is None

    @pytest.mark.asyncio
    async def test_barcode_falls_back_to_catalog(self, store, catalog):
        salt = await runs.create_run(
            store,
            make_run_request(expected=[{"item_id": "C300", "quantity": 5, "description": "Sal Refisal 1kg"}]),
        )

        matches = await lookup.search_scope(store, catalog, salt.id, "refisal")

        assert [(m.item_id, m.barcode) for m in matches] == [("C300", C300_UND)]

    @pytest.mark.asyncio
    async def test_items_outside_scope_are_not_found(self, store, catalog, run):
        assert await lookup.search_scope(store, catalog, run.id, "sal 1kg") == []

    @pytest.mark.asyncio
    async def test_results_are_capped(self, store, catalog):
        many = await runs.create_run(
            store,
            make_run_request(
                expected=[
                    {"item_id": f"G{n:03d}", "quantity": 1, "description": f"Galleta {n:03d}"}
                    for n in range(1, 61)
                ]
            ),
        )

        matches = await lookup.search_scope(store, catalog, many.id, "galleta")

        assert len(matches) == lookup.MAX_SEARCH_RESULTS
        assert matches[0].item_id == "G001"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("term", ["", " a ", "é"])
    async def test_short_terms_rejected(self, store, catalog, run, term):
        with pytest.raises(ValidationError) as exc_info:
            await lookup.search_scope(store, catalog, run.id, term)
        assert exc_info.value.field == "q"

    @pytest.mark.asyncio
    async def test_unknown_run(self, store, catalog):
        with pytest.raises(NotFoundError):
            await lookup.search_scope(store, catalog, "nope", "arroz")


class TestItemsByGroup:
    @pytest.mark.asyncio
    async def test_comma_separated_and_repeated_groups(self, catalog):
        items = await lookup.items_by_group(catalog, ["Granos,Aceites", "Granos"])

        # D400 is in Granos but inactive
        assert [i.item_id for i in items] == ["B200", "A100"]

    @pytest.mark.asyncio
    async def test_unknown_group_is_empty(self, catalog):
        assert await lookup.items_by_group(catalog, ["Lacteos"]) == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("groups", [[], [" , "]])
    async def test_a_group_is_required(self, catalog, groups):
        with pytest.raises(ValidationError) as exc_info:
            await lookup.items_by_group(catalog, groups)
        assert exc_info.value.field == "group"

    def test_split_groups_keeps_first_seen_order(self):
        assert lookup.split_groups(["Fruver, Carnes", "Fruver"]) == ["Fruver", "Carnes"]
