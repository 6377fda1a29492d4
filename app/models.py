"""Pydantic request models for the PR preview API"""

from typing import Literal, Optional

from pydantic import BaseModel


class ConnectProjectRequest(BaseModel):
    """Connect a GitHub repository"""
    repo_owner: str
    repo_name: str


class SimulatePrRequest(BaseModel):
    """Simulated pull request event (development only)"""
    project_id: int
    pr_number: int
    action: Literal["opened", "synchronize", "reopened", "closed"] = "opened"
    ref: Optional[str] = None
