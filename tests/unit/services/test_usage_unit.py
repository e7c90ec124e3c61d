"""Unit tests for usage recording and model pricing."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from storymeter.services.usage import (
    DEFAULT_IMAGE_COST_USD,
    UsageType,
    calculate_token_cost,
    get_model_pricing,
    get_project_token_usage,
    get_user_token_usage,
    record_usage,
    track_image_usage,
)

# ============================================================================
# Pricing
# ============================================================================


@pytest.mark.unit
def test_calculate_token_cost_gemini_flash():
    """Test 1,000 prompt and 500 completion tokens on gemini-2.0-flash."""
    cost = calculate_token_cost("gemini-2.0-flash", 1000, 500)

    assert cost == pytest.approx(0.000225)


@pytest.mark.unit
def test_model_prefix_and_version_suffix_are_ignored():
    """Test "models/" prefixes and dated suffixes resolve to the base model."""
    assert get_model_pricing("models/gemini-2.0-flash").model_id == "gemini-2.0-flash"
    assert get_model_pricing("gemini-2.5-pro-preview-05-06").model_id == "gemini-2.5-pro"
    assert get_model_pricing("GPT-4").model_id == "gpt-4"


@pytest.mark.unit
def test_unknown_model_uses_default_rates():
    """Test models missing from the table are billed at gemini-2.0-flash rates."""
    assert get_model_pricing("llama-3") is None
    assert calculate_token_cost("llama-3", 10_000, 10_000) == pytest.approx(0.00375)
    assert calculate_token_cost("llama-3", 10_000, 10_000) == calculate_token_cost(
        "gemini-2.0-flash", 10_000, 10_000
    )


@pytest.mark.unit
def test_cost_is_exact_decimal_arithmetic():
    """Test no float drift for gpt-3.5-turbo prices."""
    assert calculate_token_cost("gpt-3.5-turbo", 3000, 1000) == 0.003


# ============================================================================
# record_usage
# ============================================================================


@pytest.mark.unit
@pytest.mark.asyncio
async def test_record_usage_persists_record(db, make_user):
    """Test a completed call is written with its derived cost."""
    user = await make_user()

    result = await record_usage(
        db,
        user_id=user.id,
        project_id="project-1",
        usage_type=UsageType.LOGLINE,
        model="gemini-2.0-flash",
        prompt_tokens=1000,
        completion_tokens=500,
        operation_name="Generate Logline",
    )

    assert result.recorded is True
    assert result.tokens == 1500
    assert result.cost == pytest.approx(0.000225)
    assert result.record_id is not None

    totals = await get_user_token_usage(db, user.id)
    assert len(totals.records) == 1
    record = totals.records[0]
    assert record.type == "logline"
    assert record.project_id == "project-1"
    assert record.operation_name == "Generate Logline"
    assert totals.total_tokens == 1500


@pytest.mark.unit
@pytest.mark.asyncio
async def test_record_usage_prefers_reported_total(db, make_user):
    """Test the provider's total is stored when it differs from the parts."""
    user = await make_user()

    result = await record_usage(
        db,
        user_id=user.id,
        project_id=None,
        usage_type="chat",
        model="gemini-2.0-flash",
        prompt_tokens=100,
        completion_tokens=50,
        total_tokens=175,
    )

    assert result.tokens == 175


@pytest.mark.unit
@pytest.mark.asyncio
async def test_record_usage_does_not_check_limits(db, make_user, read_user):
    """Test recording works for a user who is already over quota."""
    user = await make_user(token_usage_this_month=10_000)

    result = await record_usage(
        db, user.id, None, UsageType.CHAT, "gemini-2.0-flash", 5_000, 5_000
    )

    assert result.recorded is True
    assert (await read_user(user.id)).token_usage_this_month == 10_000


@pytest.mark.unit
@pytest.mark.asyncio
async def test_record_usage_failure_is_reported_not_raised():
    """Test a failing commit is rolled back and reported in the result."""
    mock_db = MagicMock()
    mock_db.commit = AsyncMock(side_effect=OperationalError("INSERT", {}, Exception("db down")))
    mock_db.rollback = AsyncMock()

    result = await record_usage(
        mock_db, "user-1", "project-1", UsageType.SCENES, "gemini-2.0-flash", 10, 20
    )

    assert result.recorded is False
    assert result.tokens == 30
    assert result.record_id is None
    assert "db down" in result.error
    mock_db.rollback.assert_awaited_once()



# ============================================================================
# Storyboard images and aggregates
# ============================================================================


@pytest.mark.unit
@pytest.mark.asyncio
async def test_track_image_usage_logs_without_counting(db, make_user, read_user):
    """Test a reserved image is logged but the counter is left alone."""
    user = await make_user(image_usage_this_month=2)

    result = await track_image_usage(
        db, user.id, "project-1", "scene-7", "gemini-2.0-flash-exp-image-generation"
    )

    assert result.recorded is True
    assert result.tokens == 0
    assert result.cost == DEFAULT_IMAGE_COST_USD
    assert (await read_user(user.id)).image_usage_this_month == 2

    totals = await get_project_token_usage(db, user.id, "project-1")
    assert totals.records[0].type == "storyboard"
    assert totals.records[0].operation_name == "Storyboard Image: Scene scene-7"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_track_image_usage_can_bump_counter(db, make_user, read_user):
    """Test unreserved images are counted when asked."""
    user = await make_user(image_usage_this_month=2)

    await track_image_usage(db, user.id, None, "scene-1", "imagen", cost=0.04, increment_counter=True)

    assert (await read_user(user.id)).image_usage_this_month == 3


@pytest.mark.unit
@pytest.mark.asyncio
async def test_project_usage_is_scoped_to_user_and_project(db, make_user):
    """Test project totals only include the caller's records for that project."""
    owner = await make_user()
    other = await make_user()

    await record_usage(db, owner.id, "project-1", UsageType.IDEA, "gemini-2.0-flash", 100, 100)
    await record_usage(db, owner.id, "project-1", UsageType.SCRIPT, "gemini-2.0-flash", 300, 100)
    await record_usage(db, owner.id, "project-2", UsageType.IDEA, "gemini-2.0-flash", 50, 50)
    await record_usage(db, other.id, "project-1", UsageType.IDEA, "gemini-2.0-flash", 999, 1)

    totals = await get_project_token_usage(db, owner.id, "project-1")

    assert len(totals.records) == 2
    assert totals.total_tokens == 600
    assert {r.type for r in totals.records} == {"idea", "script"}
    assert totals.total_cost == pytest.approx(
        calculate_token_cost("gemini-2.0-flash", 400, 200)
    )


@pytest.mark.unit
@pytest.mark.asyncio
async def test_user_usage_with_no_records(db):
    totals = await get_user_token_usage(db, "nobody")

    assert totals.records == []
    assert totals.total_tokens == 0
    assert totals.total_cost == 0.0
