"""
Tests for the profile repositories and their unit of work.

Both implementations must keep every write of a failed unit out of storage,
and commit all of them together when the block completes.
"""
import pytest

from nudge.core.errors import PersistenceError
from nudge.services.profile import create_default_profile
from nudge.services.repository import InMemoryProfileRepository, SqlProfileRepository
from nudge.services.types import (
    BehavioralWin,
    BehaviorType,
    InterventionRecord,
    InterventionType,
    UserResponse,
    WinType,
)


def _intervention(user_id, now, intervention_id):
    return InterventionRecord(
        id=intervention_id,
        user_id=user_id,
        behavior=BehaviorType.stress_spending,
        intervention_type=InterventionType.immediate_mirror,
        message_key="ss_im_01",
        message_content="Late one tonight.",
        delivered_at=now,
        confidence=0.8,
    )


def _win(user_id, now, win_id):
    return BehavioralWin(
        id=win_id, user_id=user_id, behavior_type=BehaviorType.stress_spending,
        win_type=WinType.pattern_break, message="The pattern broke this week.", created_at=now,
    )


@pytest.fixture(params=["memory", "sql"])
def repository(request, db):
    if request.param == "memory":
        return InMemoryProfileRepository()
    return SqlProfileRepository(db)


class TestUnitOfWork:
    def test_completed_unit_commits_every_write(self, repository, now):
        user_id = "uow-commit"
        profile = create_default_profile(user_id, now)
        profile.total_wins = 1
        with repository.unit_of_work("test", user_id):
            repository.save_profile(profile)
            repository.append_win(_win(user_id, now, "uow-commit-win"))

        assert repository.get_profile(user_id).total_wins == 1
        assert repository.get_win("uow-commit-win") is not None

    def test_failed_unit_keeps_nothing(self, repository, now):
        user_id = "uow-rollback"
        repository.append_intervention(_intervention(user_id, now, "uow-rollback-i"))

        with pytest.raises(PersistenceError):
            with repository.unit_of_work("test", user_id):
                repository.set_intervention_response("uow-rollback-i", UserResponse.ignored, now)
                repository.save_profile(create_default_profile(user_id, now))
                raise PersistenceError("save_profile", user_id)

        assert repository.get_profile(user_id) is None
        assert repository.get_intervention("uow-rollback-i").user_response is None

    def test_nested_unit_joins_the_outer_one(self, repository, now):
        user_id = "uow-nested"
        with pytest.raises(PersistenceError):
            with repository.unit_of_work("outer", user_id):
                with repository.unit_of_work("inner", user_id):
                    repository.save_profile(create_default_profile(user_id, now))
                raise PersistenceError("append_transition", user_id)

        assert repository.get_profile(user_id) is None

    def test_writes_outside_a_unit_commit_immediately(self, repository, now):
        user_id = "uow-direct"
        repository.save_profile(create_default_profile(user_id, now))
        assert repository.get_profile(user_id) is not None
