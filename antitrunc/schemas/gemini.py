from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


# Minimal Gemini generateContent schema. Unknown fields are kept so that
# validated bodies can be forwarded upstream without losing anything.


class _Open(BaseModel):
    model_config = ConfigDict(extra="allow")


class Part(_Open):
    text: Optional[str] = None
    thought: Optional[bool] = None
    functionCall: Optional[Dict[str, Any]] = None


class Content(_Open):
    role: Optional[str] = None
    parts: Optional[List[Part]] = None


class ThinkingConfig(_Open):
    thinkingBudget: Optional[int] = None


class GenerationConfig(_Open):
    thinkingConfig: Optional[ThinkingConfig] = None
    responseSchema: Optional[Any] = None


class GenerateContentRequest(_Open):
    contents: Optional[List[Content]] = None
    systemInstruction: Optional[Content] = None
    system_instruction: Optional[Content] = None
    generationConfig: Optional[GenerationConfig] = None


# Synthetic response payloads built by the proxy


class OutputPart(BaseModel):
    text: str
    thought: Optional[bool] = None


class OutputContent(BaseModel):
    parts: List[OutputPart] = Field(default_factory=list)
    role: Optional[Literal["model"]] = None


class Candidate(BaseModel):
    content: OutputContent
    finishReason: Optional[str] = None
    index: Optional[int] = None


class GenerateContentResponse(BaseModel):
    candidates: List[Candidate]


class ErrorBody(BaseModel):
    code: int
    message: str
    details: Optional[Any] = None


class ErrorResponse(BaseModel):
    error: ErrorBody
