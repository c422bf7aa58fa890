from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class WatchedRangeDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    start: float = Field(ge=0, allow_inf_nan=False)
    end: float = Field(ge=0, allow_inf_nan=False)


class ProgressUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    watchedSeconds: Optional[float] = Field(default=None, ge=0, allow_inf_nan=False)
    watchedRanges: Optional[List[WatchedRangeDto]] = None
    currentPosition: float = Field(default=0, ge=0, allow_inf_nan=False)
    sessionDuration: float = Field(default=0, ge=0, allow_inf_nan=False)
    videoDuration: Optional[int] = Field(default=None, ge=0)
    ended: bool = False

