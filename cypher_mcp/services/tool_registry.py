from enum import Enum
from pathlib import Path
from typing import Any, Dict, List

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError


class ToolKind(str, Enum):
    SCHEMA = "schema"
    READ = "read"
    WRITE = "write"


class ToolDefinition(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    kind: ToolKind
    description: str
    input_schema: Dict[str, Any] = Field(alias="inputSchema")

    def to_wire(self) -> Dict[str, Any]:
        return {"name": self.name, "description": self.description, "inputSchema": self.input_schema}


class ToolRegistry:
    """
    Loads and validates tool definitions from tools.yaml.
    """

    def __init__(self, tools_path: str) -> None:
        self._path = Path(tools_path)
        if not self._path.exists():
            raise FileNotFoundError(f"tools.yaml not found at {tools_path}")
        self._tools: Dict[str, ToolDefinition] = {}
        self._load()

    def _load(self) -> None:
        data = yaml.safe_load(self._path.read_text()) or {}
        entries = data.get("tools") or {}
        tools: Dict[str, ToolDefinition] = {}
        for name, cfg in entries.items():
            try:
                tool = ToolDefinition(**cfg)
            except ValidationError as e:
                raise ValueError(f"Invalid tool definition for {name}: {e}") from e
            tools[tool.name] = tool
        self._tools = tools

    def get(self, name: str) -> ToolDefinition:
        if name not in self._tools:
            raise KeyError(f"Tool '{name}' not found in registry")
        return self._tools[name]

    def exists(self, name: str) -> bool:
        return name in self._tools

    def all_tools(self, include_write: bool = True) -> List[ToolDefinition]:
        return [t for t in self._tools.values() if include_write or t.kind is not ToolKind.WRITE]
