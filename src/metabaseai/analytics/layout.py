#
#  Copyright (C) 2017-2025 Dremio Corporation
#
#  Licensed under the Apache License, Version 2.0 (the "License");
#  you may not use this file except in compliance with the License.
#  You may obtain a copy of the License at
#
#      http://www.apache.org/licenses/LICENSE-2.0
#
#  Unless required by applicable law or agreed to in writing, software
#  distributed under the License is distributed on an "AS IS" BASIS,
#  WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#  See the License for the specific language governing permissions and
#  limitations under the License.
#
"""
Dashboard card placement on Metabase's 12 column grid, and the starter
questions for an executive dashboard.
"""
from typing import Iterable, List, NamedTuple, Optional

from metabaseai.api.metabase.models import Engine
from metabaseai.db.models import ColumnDetail, TableDetail


class Position(NamedTuple):
    row: int
    col: int
    size_x: int
    size_y: int


class ExecutiveQuestion(NamedTuple):
    name: str
    sql: str
    display: str


def grid_position(index: int) -> Position:
    return Position(row=(index // 3) * 4, col=(index % 3) * 4, size_x=4, size_y=4)


def executive_position(index: int) -> Position:
    # KPI strip, then two charts side by side, then full width tables
    if index < 4:
        return Position(row=0, col=index * 3, size_x=3, size_y=3)
    if index < 6:
        return Position(row=1, col=(index - 4) * 6, size_x=6, size_y=4)
    return Position(row=2 + (index - 6), col=0, size_x=12, size_y=6)


_SALES = ("sale", "order", "transaction")
_CUSTOMERS = ("customer", "user", "client")
_PRODUCTS = ("product", "item", "inventory")
_AMOUNTS = ("amount", "total", "price", "revenue")
_DISPLAY_ORDER = {"scalar": 0, "line": 1, "bar": 1, "table": 2}


def _first(tables: Iterable[TableDetail], words) -> Optional[TableDetail]:
    return next((t for t in tables if any(w in t.name.lower() for w in words)), None)


def _amount_column(table: TableDetail) -> Optional[ColumnDetail]:
    return next(
        (c for c in table.columns if any(w in c.name.lower() for w in _AMOUNTS)), None
    )


def _date_column(table: TableDetail) -> Optional[ColumnDetail]:
    def is_date(c: ColumnDetail) -> bool:
        t = (c.type or "").lower()
        return "date" in t or "time" in t

    return next((c for c in table.columns if is_date(c)), None) or next(
        (c for c in table.columns if c.name.lower().endswith(("_at", "_date"))), None
    )


def _recent(engine: Engine, column: str, days: int) -> str:
    if engine == Engine.mysql:
        return f"{column} >= CURRENT_DATE - INTERVAL {days} DAY"
    return f"{column} >= CURRENT_DATE - INTERVAL '{days} days'"


def executive_questions(
    schema: str,
    tables: List[TableDetail],
    engine: Engine = Engine.postgres,
    days: int = 30,
) -> List[ExecutiveQuestion]:
    """KPI, trend and breakdown questions for whichever sales, customer and
    product tables are recognisable by name."""
    questions = []

    if sales := _first(tables, _SALES):
        source = f"{schema}.{sales.name}"
        amount = _amount_column(sales)
        date = _date_column(sales)
        where = f" WHERE {_recent(engine, date.name, days)}" if date else ""
        if amount:
            questions.append(
                ExecutiveQuestion(
                    "Total Revenue",
                    f"SELECT SUM({amount.name}) AS revenue FROM {source}{where}",
                    "scalar",
                )
            )
        questions.append(
            ExecutiveQuestion(
                f"Total {sales.name.title()}",
                f"SELECT COUNT(*) AS total FROM {source}{where}",
                "scalar",
            )
        )
        if date:
            measure = f"SUM({amount.name})" if amount else "COUNT(*)"
            questions.append(
                ExecutiveQuestion(
                    "Sales Trend",
                    f"SELECT DATE({date.name}) AS day, {measure} AS value "
                    f"FROM {source}{where} GROUP BY DATE({date.name}) ORDER BY day",
                    "line",
                )
            )

    if customers := _first(tables, _CUSTOMERS):
        source = f"{schema}.{customers.name}"
        questions.append(
            ExecutiveQuestion(
                "Total Customers",
                f"SELECT COUNT(*) AS customer_count FROM {source}",
                "scalar",
            )
        )
        if date := _date_column(customers):
            questions.append(
                ExecutiveQuestion(
                    f"New Customers ({days}d)",
                    f"SELECT COUNT(*) AS new_customers FROM {source} "
                    f"WHERE {_recent(engine, date.name, days)}",
                    "scalar",
                )
            )

    if products := _first(tables, _PRODUCTS):
        questions.append(
            ExecutiveQuestion(
                "Product Catalog",
                f"SELECT * FROM {schema}.{products.name} LIMIT 100",
                "table",
            )
        )

    # kpis first so they land in the top strip
    return sorted(questions, key=lambda q: _DISPLAY_ORDER[q.display])
