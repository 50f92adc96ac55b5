import json
from pathlib import Path

from patchbay.event_bus import PipelineEvent


class AuditLogger:
    """Buffers pipeline events and appends them to a JSONL file."""

    def __init__(self, log_file="audit.jsonl", batch_size=10):
        self.log_file = Path(log_file)
        self.batch_size = batch_size
        self._buffer = []

    def __call__(self, event: PipelineEvent):
        self.log(event)

    def log(self, event: PipelineEvent):
        self._buffer.append(json.dumps(event.model_dump(), default=str) + "\n")
        if len(self._buffer) >= self.batch_size:
            self.flush()

    def flush(self):
        if not self._buffer:
            return
        self.log_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.log_file, "a") as f:
            f.writelines(self._buffer)
        self._buffer.clear()

    def __del__(self):
        self.flush()
