"""Filesystem tools - read, write and list local files."""

import os

from pydantic import BaseModel, Field

from tools.base_tool import Tool


MAX_READ_CHARS = 50000


class ReadFileParams(BaseModel):
    path: str = Field(..., description="Path of the file to read.")
    max_chars: int = Field(default=MAX_READ_CHARS, ge=1, description="Truncate the content after this many characters.")


class WriteFileParams(BaseModel):
    path: str = Field(..., description="Path of the file to write.")
    content: str = Field(..., description="Text to write.")
    append: bool = Field(default=False, description="Append instead of overwriting.")


class ListDirectoryParams(BaseModel):
    path: str = Field(default=".", description="Directory to list.")


class ReadFileTool(Tool):
    name = "read_file"
    description = "Read a UTF-8 text file and return its content."
    category = "filesystem"
    Params = ReadFileParams

    async def execute(self, params: ReadFileParams) -> dict:
        path = os.path.expanduser(params.path)
        if not os.path.isfile(path):
            raise FileNotFoundError(f"No such file: {params.path}")
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            content = f.read()
        truncated = len(content) > params.max_chars
        if truncated:
            content = content[:params.max_chars]
        return {"path": params.path, "content": content, "truncated": truncated}


class WriteFileTool(Tool):
    name = "write_file"
    description = "Write text to a file, creating parent directories as needed."
    category = "filesystem"
    dangerous = True
    Params = WriteFileParams

    async def execute(self, params: WriteFileParams) -> dict:
        path = os.path.expanduser(params.path)
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, "a" if params.append else "w", encoding="utf-8") as f:
            f.write(params.content)
        return {"path": params.path, "bytes_written": len(params.content.encode("utf-8"))}


class ListDirectoryTool(Tool):
    name = "list_directory"
    description = "List the entries of a directory."
    category = "filesystem"
    Params = ListDirectoryParams

    async def execute(self, params: ListDirectoryParams) -> dict:
        path = os.path.expanduser(params.path)
        if not os.path.isdir(path):
            raise NotADirectoryError(f"Not a directory: {params.path}")
        entries = []
        for name in sorted(os.listdir(path)):
            full = os.path.join(path, name)
            entries.append({"name": name, "type": "dir" if os.path.isdir(full) else "file"})
        return {"path": params.path, "entries": entries}
