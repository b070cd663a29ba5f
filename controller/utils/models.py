from pydantic import BaseModel, Field, field_validator
from typing import Dict, List, Optional

MAX_DEPLOY_COUNT = 32


class AppRequest(BaseModel):
    app: str = Field(..., min_length=1)


class HostRequest(BaseModel):
    host: str = Field(..., min_length=1)


class EnvRequest(BaseModel):
    env: str = Field(..., min_length=1)

    @field_validator("env")
    @classmethod
    def env_has_key(cls, v):
        if v.startswith("="):
            raise ValueError("env must look like KEY=VALUE")
        return v


class DeployRequest(BaseModel):
    image: str = Field(..., min_length=1)
    count: Optional[int] = Field(None, ge=1)

    def resolved_count(self, default: int, maximum: int = MAX_DEPLOY_COUNT) -> int:
        """Requested count, falling back to `default` and capped at `maximum`."""
        return min(self.count or default, maximum)


class DeployResponse(BaseModel):
    error: bool = False
    app: str
    image: str
    instances: List[str]
    retired: List[str]


class AppDescription(BaseModel):
    instances: List[str]
    envs: List[str]
    image: Optional[str] = None


class DescribeResponse(BaseModel):
    error: bool = False
    description: Dict[str, AppDescription]
