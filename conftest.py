import random
import shutil
from pathlib import Path

import pytest

from trpg_session.config import SessionConfig
from trpg_session.models import (
    Enemy,
    Location,
    Npc,
    PlayerCharacter,
    ScheduledEvent,
    Stats,
    WorldRoster,
)
from trpg_session.session import SessionController
from trpg_session.storage import Storage

TEST_DATA_DIR = Path("data-tests")


@pytest.fixture(autouse=True)
def clean_test_data():
    """Wipe data-tests/ before every test."""
    if TEST_DATA_DIR.exists():
        shutil.rmtree(TEST_DATA_DIR)
    TEST_DATA_DIR.mkdir()
    yield
    # leave data-tests around after tests for inspection; CI can ignore it


@pytest.fixture
def storage() -> Storage:
    return Storage(TEST_DATA_DIR)


@pytest.fixture
def world() -> WorldRoster:
    """Two heroes, a town with an inn and an innkeeper, goblins on the forest road."""
    return WorldRoster(
        characters=[
            PlayerCharacter(
                id="pc-aria", name="Aria", level=3, hp=24, max_hp=24, initiative=14,
                stats=Stats(dexterity=16, wisdom=12, charisma=14),
            ),
            PlayerCharacter(
                id="pc-bram", name="Bram", level=3, hp=30, max_hp=30, initiative=9,
                stats=Stats(strength=16, wisdom=10, charisma=8),
            ),
        ],
        npcs=[Npc(id="npc-mira", name="Mira", location_id="town", attitude="friendly")],
        enemies=[
            Enemy(id="gob-1", name="Goblin", type="humanoid", hp=7, max_hp=7, attack=2,
                  initiative=12, location_id="road"),
            Enemy(id="gob-2", name="Goblin Archer", type="humanoid", hp=7, max_hp=7, attack=2,
                  initiative=16, location_id="road"),
        ],
        locations=[
            Location(id="town", name="Oakvale", type="town", features=["inn", "shop"]),
            Location(id="road", name="North Road", type="road", features=["open_field"]),
            Location(id="chapel", name="Old Chapel", type="town", features=["temple"]),
        ],
        events=[
            ScheduledEvent(id="ev-fair", title="Harvest Fair", description="Stalls fill the square.",
                           day=2, location_id="town", event_type="social"),
        ],
    )


@pytest.fixture
def controller(world, storage) -> SessionController:
    return SessionController(
        world,
        config=SessionConfig(data_dir=TEST_DATA_DIR),
        storage=storage,
        rng=random.Random(7),
    )
