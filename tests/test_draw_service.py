import random

import pytest

from rafflehub.services.admission_service import EntryAdmission
from rafflehub.services.draw_service import (
    AlreadyDrawnError,
    DrawForbiddenError,
    NoEntriesError,
    RaffleNotFoundError,
    RandomnessUnavailableError,
    WinnerSelection,
)
from rafflehub.services.random_service import LocalRandomSource, RandomOrgError
from rafflehub.services.raffle_store import RaffleStore

from conftest import CREATOR_ID, ScriptedRandom


class FailingRandom:
    async def pick_index(self, size):
        raise RandomOrgError("Random.org API error: key is not running")


class ConcurrentEntryStore(RaffleStore):
    """Lets one more entry land between the draw's read and its write, once"""

    def __init__(self, session_factory, late_payer):
        super().__init__(session_factory)
        self.late_payer = late_payer
        self.interfered = False

    async def update(self, raffle_id, fields, expected_version=None, require_open=False):
        if "winner" in fields and not self.interfered:
            self.interfered = True
            await EntryAdmission(RaffleStore(self.session_factory)).admit(raffle_id, self.late_payer)
        return await super().update(raffle_id, fields, expected_version, require_open)


async def _with_entries(store, make_raffle, *payers):
    raffle_id = await make_raffle()
    admission = EntryAdmission(store)
    entries = [await admission.admit(raffle_id, payer) for payer in payers]
    return raffle_id, entries


async def test_draw_picks_the_scripted_entry(store, make_raffle, alice, bob, carol):
    raffle_id, entries = await _with_entries(store, make_raffle, alice, bob, carol)
    source = ScriptedRandom(1)

    winner = await WinnerSelection(store, random_source=source).draw_winner(raffle_id, CREATOR_ID)

    assert winner == entries[1]
    assert source.sizes == [3]
    raffle = await store.get(raffle_id)
    assert raffle.winner == entries[1]
    assert raffle.entries == entries


async def test_winner_is_one_of_the_entries(store, make_raffle, alice, bob):
    raffle_id, entries = await _with_entries(store, make_raffle, alice, bob)
    source = LocalRandomSource(random.Random(7))

    winner = await WinnerSelection(store, random_source=source).draw_winner(raffle_id, CREATOR_ID)

    assert winner in entries


async def test_draw_without_entries_changes_nothing(store, make_raffle):
    raffle_id = await make_raffle()
    before = await store.get(raffle_id)

    with pytest.raises(NoEntriesError):
        await WinnerSelection(store, random_source=ScriptedRandom()).draw_winner(raffle_id, CREATOR_ID)

    assert await store.get(raffle_id) == before


async def test_only_creator_can_draw(store, make_raffle, alice):
    raffle_id, _ = await _with_entries(store, make_raffle, alice)
    source = ScriptedRandom()

    with pytest.raises(DrawForbiddenError):
        await WinnerSelection(store, random_source=source).draw_winner(raffle_id, "alice")

    raffle = await store.get(raffle_id)
    assert raffle.winner is None
    assert source.sizes == []


async def test_second_draw_is_rejected(store, make_raffle, alice, bob):
    raffle_id, entries = await _with_entries(store, make_raffle, alice, bob)
    selection = WinnerSelection(store, random_source=ScriptedRandom(0, 1))

    first = await selection.draw_winner(raffle_id, CREATOR_ID)
    with pytest.raises(AlreadyDrawnError):
        await selection.draw_winner(raffle_id, CREATOR_ID)

    assert (await store.get(raffle_id)).winner == first == entries[0]


async def test_draw_on_missing_raffle(store):
    with pytest.raises(RaffleNotFoundError):
        await WinnerSelection(store, random_source=ScriptedRandom()).draw_winner("missing", CREATOR_ID)


async def test_random_failure_keeps_raffle_open(store, make_raffle, alice):
    raffle_id, _ = await _with_entries(store, make_raffle, alice)

    with pytest.raises(RandomnessUnavailableError):
        await WinnerSelection(store, random_source=FailingRandom()).draw_winner(raffle_id, CREATOR_ID)

    assert (await store.get(raffle_id)).winner is None


async def test_draw_retries_over_fresh_entries(session_factory, make_raffle, alice, bob):
    store = ConcurrentEntryStore(session_factory, late_payer=bob)
    raffle_id = await make_raffle()
    await EntryAdmission(store).admit(raffle_id, alice)
    source = ScriptedRandom(0, 1)

    winner = await WinnerSelection(store, random_source=source).draw_winner(raffle_id, CREATOR_ID)

    raffle = await store.get(raffle_id)
    assert source.sizes == [1, 2]
    assert len(raffle.entries) == 2
    assert winner == raffle.entries[1]
    assert raffle.winner == winner


async def test_delete_by_creator(store, make_raffle):
    raffle_id = await make_raffle()

    await WinnerSelection(store, random_source=ScriptedRandom()).delete_raffle(raffle_id, CREATOR_ID)

    assert await store.get(raffle_id) is None


async def test_delete_by_other_user_is_forbidden(store, make_raffle):
    raffle_id = await make_raffle()

    with pytest.raises(DrawForbiddenError):
        await WinnerSelection(store, random_source=ScriptedRandom()).delete_raffle(raffle_id, "mallory")

    assert await store.get(raffle_id) is not None
