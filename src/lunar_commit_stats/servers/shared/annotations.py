from datetime import datetime
from typing import Annotated

from pydantic import Field

DETAILED = Annotated[
    bool,
    Field(
        description="Whether to also fetch the size of every commit made within the lookback window. "
        + "Detailed runs are much slower but add average commit sizes and the largest commit."
    ),
]
FORCE_REFRESH = Annotated[bool, Field(description="Whether to run the analysis again even if fresh stats are stored.")]

TIMESTAMP = Annotated[
    datetime,
    Field(description="The ISO 8601 timestamp to classify, for example '2024-03-25T07:00:00Z'. Timestamps without an offset are UTC."),
]
