"""
Storyline breakdown returned by the LLM and stored on the video
"""
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List


class StorylineScene(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    timestamp: str = "00:00"  # MM:SS
    duration: str = ""
    description: str = ""
    emotions: List[str] = []
    key_objects: List[str] = Field(default=[], alias="keyObjects")
    actions: List[str] = []


class StorylineCharacter(BaseModel):
    name: str
    description: str = ""
    appearances: List[str] = []  # MM:SS


class StorylineBreakdown(BaseModel):
    title: str = "Video Analysis"
    summary: str = "Analysis completed"
    scenes: List[StorylineScene] = []
    characters: List[StorylineCharacter] = []
    themes: List[str] = []
    mood: str = "Neutral"
    genre: str = "General"
    confidence: int = Field(default=75, ge=0, le=100)

    @classmethod
    def from_llm(cls, data: Dict[str, Any]) -> "StorylineBreakdown":
        """Empty or missing fields from the model fall back to the defaults"""
        return cls.model_validate({key: value for key, value in data.items() if value not in (None, "", [])})
