"""Survey lifecycle: create, edit, close/reopen, cascade delete."""

import pytest

from survey_node.errors import ConflictError, NotFoundError, ValidationError
from survey_node.ledger import list_votes
from survey_node.lifecycle import (
    TALLIES,
    close_survey,
    create_survey,
    delete_survey,
    edit_survey,
    get_survey,
    list_surveys,
    reopen_survey,
)
from survey_node.reconciler import audit_tallies, cast_vote


async def test_create_trims_and_initializes(store):
    survey = await create_survey(store, "  Wage?  ", [" 300 ", "", "400", "   "])

    assert survey.question == "Wage?"
    assert [o.text for o in survey.options] == ["300", "400"]
    assert all(o.votes == 0 for o in survey.options)
    assert survey.is_active is True
    assert survey.created_at is not None
    assert len({o.id for o in survey.options}) == 2
    assert all(o.id.startswith("opt_") for o in survey.options)


@pytest.mark.parametrize(
    "question, options",
    [
        ("", ["a", "b"]),
        ("   ", ["a", "b"]),
        ("Q?", ["a"]),
        ("Q?", ["a", "  "]),
        ("Q?", ["Yes", " yes "]),
        ("Q?", []),
    ],
)
async def test_create_validation(store, question, options):
    with pytest.raises(ValidationError):
        await create_survey(store, question, options)
    assert await list_surveys(store) == []


async def test_list_newest_first(store):
    first = await create_survey(store, "First?", ["a", "b"])
    second = await create_survey(store, "Second?", ["a", "b"])

    assert [s.id for s in await list_surveys(store)] == [second.id, first.id]


async def test_edit_keeps_matching_options_and_their_votes(store, survey, option_ids):
    await cast_vote(store, survey.id, "Ram", "9876543210", option_ids[0])

    edited = await edit_survey(store, survey.id, "Fair wage per day?", ["300", "450", "400"])

    assert edited.question == "Fair wage per day?"
    assert [o.text for o in edited.options] == ["300", "450", "400"]
    assert edited.options[0].id == option_ids[0]
    assert edited.options[0].votes == 1
    assert edited.options[2].id == option_ids[1]
    assert edited.options[1].votes == 0
    assert await audit_tallies(store, survey.id) == {}


async def test_edit_matches_text_ignoring_case(store):
    survey = await create_survey(store, "Q?", ["Yes", "No"])
    edited = await edit_survey(store, survey.id, "Q?", ["YES", "No", "Maybe"])

    assert edited.options[0].id == survey.options[0].id
    assert edited.options[0].text == "YES"


async def test_edit_cannot_drop_option_with_votes(store, survey, option_ids):
    await cast_vote(store, survey.id, "Ram", "9876543210", option_ids[1])

    with pytest.raises(ConflictError):
        await edit_survey(store, survey.id, "Q?", ["300", "500"])

    unchanged = await get_survey(store, survey.id)
    assert [o.id for o in unchanged.options] == option_ids


async def test_edit_may_drop_option_without_votes(store, survey, option_ids):
    await cast_vote(store, survey.id, "Ram", "9876543210", option_ids[0])

    edited = await edit_survey(store, survey.id, "Q?", ["300", "500"])
    assert [o.votes for o in edited.options] == [1, 0]


async def test_edit_validation_and_missing(store, survey):
    with pytest.raises(ValidationError):
        await edit_survey(store, survey.id, "Q?", ["only one"])
    with pytest.raises(NotFoundError):
        await edit_survey(store, "nope", "Q?", ["a", "b"])


async def test_close_and_reopen_leave_tallies(store, survey, option_ids):
    await cast_vote(store, survey.id, "Ram", "9876543210", option_ids[0])

    closed = await close_survey(store, survey.id)
    assert closed.is_active is False
    assert closed.options[0].votes == 1

    reopened = await reopen_survey(store, survey.id)
    assert reopened.is_active is True
    await cast_vote(store, survey.id, "Shyam", "9876543211", option_ids[0])
    assert (await get_survey(store, survey.id)).options[0].votes == 2


async def test_close_missing_survey(store):
    with pytest.raises(NotFoundError):
        await close_survey(store, "nope")


async def test_delete_cascades_to_votes(store, survey, option_ids):
    other = await create_survey(store, "Other?", ["x", "y"])
    for i in range(5):
        await cast_vote(store, survey.id, f"Farmer {i}", f"987654321{i}", option_ids[i % 2])
    await cast_vote(store, other.id, "Farmer 0", "9876543210", other.options[0].id)

    removed = await delete_survey(store, survey.id)

    assert removed == 5
    assert await list_votes(store, survey.id) == []
    assert len(await list_votes(store, other.id)) == 1
    with pytest.raises(NotFoundError):
        await get_survey(store, survey.id)
    assert await store.get(TALLIES, survey.id) is None
    assert await store.get(TALLIES, other.id) is not None


async def test_delete_missing_survey(store):
    with pytest.raises(NotFoundError):
        await delete_survey(store, "nope")
