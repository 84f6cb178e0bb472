from typing import Literal

from pydantic import BaseModel

RepairTask = Literal["link-candidates", "replay-events", "recount-metrics"]


class RepairRunOut(BaseModel):
    task: RepairTask
    scanned: int
    repaired: int
    failed: int
