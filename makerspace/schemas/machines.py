from pydantic import BaseModel, ConfigDict


class MachineRequirementDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    moduleID: int
    requiredWatchPercent: int = 90
