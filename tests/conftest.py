from __future__ import annotations

from contextlib import closing
from dataclasses import dataclass
from typing import Callable, List, Mapping

import pytest
import sqlalchemy as sa
import sqlalchemy.orm

from . import const, models


@pytest.fixture()
def ssn(engine: sa.engine.Engine) -> sa.orm.Session:
    # Clean the DB
    models.Base.metadata.drop_all(bind=engine)
    models.Base.metadata.create_all(bind=engine)

    # New session
    SessionMaker = sa.orm.sessionmaker(autoflush=False, bind=engine)

    with closing(SessionMaker()) as ssn:
        yield ssn


@pytest.fixture()
def numbers_and_fruits(ssn: sa.orm.Session) -> NumbersAndFruits:
    from .models import Number, Fruit, Tag
    red, sweet, sour = Tag(id=1, name='red'), Tag(id=2, name='sweet'), Tag(id=3, name='sour')
    ssn.add_all([
        # Three Numbers, each with 2 Fruits
        Number(id=1, en='one', es='uno', no='en', fruits=[
            Fruit(id=11, en='apple', es='manzana', no='manzana', tags=[sweet, red]),
            Fruit(id=12, en='orange', es='naranja', no='oransje', tags=[sour]),
        ]),
        Number(id=2, en='two', es='dos', no='to', fruits=[
            Fruit(id=21, en='grape', es='uva', no='drue'),
            Fruit(id=22, en='plum', es='ciruela', no='plomme', tags=[sweet]),
        ]),
        Number(id=3, en='three', es='tres', no='tre', fruits=[
            Fruit(id=31, en='cherry', es='cereza', no='kirsebær', tags=[red]),
            Fruit(id=32, en='strawberry', es='fresa', no='jordbær'),
        ]),
        # One Number with no Fruits
        Number(id=4, en='four', es='cuatro', no='fire'),
        # One Fruit with no Number
        Fruit(id=40, en='tomato', es='tomate', no='tomat'),
    ])
    ssn.commit()

    # Remember ids, then forget everything: tests start with an empty Session
    result = NumbersAndFruits(
        numbers=sorted(ssn.scalars(sa.select(Number.id))),
        fruits=sorted(ssn.scalars(sa.select(Fruit.id))),
    )
    ssn.expunge_all()
    return result


@dataclass
class NumbersAndFruits:
    numbers: List[int]
    fruits: List[int]


@pytest.fixture()
def many_numbers(ssn: sa.orm.Session) -> Callable[[int], Mapping[int, int]]:
    """ Factory: create N Numbers; every third one gets a Fruit

    Returns:
        { number id: number of fruits }
    """
    from .models import Number, Fruit

    def create(n: int) -> Mapping[int, int]:
        fruit_counts = {}
        for i in range(1, n + 1):
            fruits = [Fruit(id=i * 10, en=f'fruit-{i}')] if i % 3 == 0 else []
            ssn.add(Number(id=i, en=f'number-{i}', fruits=fruits))
            fruit_counts[i] = len(fruits)
        ssn.commit()
        ssn.expunge_all()
        return fruit_counts
    return create


@pytest.fixture(
    scope='module',
    params=const.DB_URLS,
)
def engine(request) -> sa.engine.Engine:
    DB_URL = request.param
    return sa.create_engine(DB_URL, echo=False)
