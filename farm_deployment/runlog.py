import json
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from farm_deployment.constants import RUN_LOGS_DIR

STEP_DEPLOY_TOKEN = "deploy_token"
STEP_READ_CHAIN_HEIGHT = "read_chain_height"
STEP_DEPLOY_FARM = "deploy_farm"
STEP_TRANSFER_OWNERSHIP = "transfer_ownership"
STEP_VERIFY = "verify"

STEPS = [
    STEP_DEPLOY_TOKEN,
    STEP_READ_CHAIN_HEIGHT,
    STEP_DEPLOY_FARM,
    STEP_TRANSFER_OWNERSHIP,
]

RUN_LOG_JSON_FORMAT = {"indent": 4, "separators": (",", ": ")}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class RunLog:
    """
    Inspectable record of a single deployment run.

    The log is rewritten to disk after every completed step so that a failed run
    can be diagnosed and resumed from the last successful step.
    """

    IN_PROGRESS = "in_progress"
    FAILED = "failed"
    COMPLETED = "completed"

    class Mismatch(Exception):
        """Raised when a run log does not belong to the deployment being resumed"""

    def __init__(self, filepath: Path, data: Dict[str, Any]):
        self.filepath = Path(filepath)
        self.data = data

    @staticmethod
    def new_run_id() -> str:
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        return f"{timestamp}-{uuid.uuid4().hex[:8]}"

    @classmethod
    def default_filepath(cls, deployment: str, run_id: str, directory: Path = RUN_LOGS_DIR) -> Path:
        return Path(directory) / f"{deployment}-{run_id}.json"

    @classmethod
    def create(
        cls,
        deployment: str,
        chain_id: int,
        deployer: str,
        token_contract: str,
        farm_contract: str,
        filepath: Optional[Path] = None,
        directory: Path = RUN_LOGS_DIR,
    ) -> "RunLog":
        run_id = cls.new_run_id()
        filepath = filepath or cls.default_filepath(deployment, run_id, directory)
        if Path(filepath).exists():
            raise FileExistsError(f"Run log already exists at {filepath}")
        data = {
            "run_id": run_id,
            "deployment": deployment,
            "chain_id": int(chain_id),
            "deployer": str(deployer),
            "token_contract": token_contract,
            "farm_contract": farm_contract,
            "started_at": _now(),
            "resumed_at": [],
            "status": cls.IN_PROGRESS,
            "failure": None,
            "steps": [],
            "pending": {},
        }
        run_log = cls(filepath=filepath, data=data)
        run_log.write()
        return run_log

    @classmethod
    def load(cls, filepath: Path) -> "RunLog":
        with open(filepath, "r") as file:
            data = json.load(file)
        for key in ("run_id", "deployment", "chain_id", "deployer", "status", "steps"):
            if key not in data:
                raise KeyError(key)
        data.setdefault("pending", dict())
        return cls(filepath=filepath, data=data)

    def write(self) -> Path:
        self.filepath.parent.mkdir(parents=True, exist_ok=True)
        temp_filepath = self.filepath.with_suffix(".temp.json")
        with open(temp_filepath, "w") as file:
            json.dump(self.data, file, **RUN_LOG_JSON_FORMAT)
        temp_filepath.replace(self.filepath)
        return self.filepath

    @property
    def run_id(self) -> str:
        return self.data["run_id"]

    @property
    def status(self) -> str:
        return self.data["status"]

    @property
    def failure(self) -> Optional[Dict[str, Any]]:
        return self.data.get("failure")

    @property
    def steps(self) -> List[Dict[str, Any]]:
        return self.data["steps"]

    def get(self, step: str) -> Optional[Dict[str, Any]]:
        for entry in self.steps:
            if entry["step"] == step:
                return entry
        return None

    def is_done(self, step: str) -> bool:
        return self.get(step) is not None

    def next_step(self) -> Optional[str]:
        for step in STEPS:
            if not self.is_done(step):
                return step
        return None

    def record(self, step: str, **outputs) -> Dict[str, Any]:
        """Records a completed step and its outputs, replacing any earlier record of it."""
        if step not in STEPS:
            raise ValueError(f"Unknown deployment step '{step}'")
        entry = {"step": step, "completed_at": _now(), **outputs}
        self.data["steps"] = [e for e in self.steps if e["step"] != step] + [entry]
        self.data["steps"].sort(key=lambda e: STEPS.index(e["step"]))
        self.data["pending"].pop(step, None)
        self.write()
        return entry

    def get_pending(self, step: str) -> Optional[Dict[str, Any]]:
        return self.data["pending"].get(step)

    def set_pending(self, step: str, **details) -> Dict[str, Any]:
        """Records a transaction about to be submitted for a step that has not completed yet."""
        if step not in STEPS:
            raise ValueError(f"Unknown deployment step '{step}'")
        entry = {"submitted_at": _now(), **details}
        self.data["pending"][step] = entry
        self.write()
        return entry

    def discard_pending(self, step: str) -> None:
        if self.data["pending"].pop(step, None) is not None:
            self.write()

    def fail(self, step: str, error: BaseException) -> None:
        self.data["status"] = self.FAILED
        self.data["failure"] = {
            "step": step,
            "error": type(error).__name__,
            "message": str(error),
            "at": _now(),
        }
        self.write()

    def complete(self) -> None:
        self.data["status"] = self.COMPLETED
        self.data["failure"] = None
        self.write()

    def resume(self) -> None:
        if self.status == self.COMPLETED:
            raise self.Mismatch(f"Run {self.run_id} already completed; nothing to resume.")
        self.data["status"] = self.IN_PROGRESS
        self.data["failure"] = None
        self.data.setdefault("resumed_at", []).append(_now())
        self.write()

    def check_matches(
        self,
        deployment: str,
        chain_id: int,
        deployer: str,
        token_contract: str,
        farm_contract: str,
    ) -> None:
        expected = {
            "deployment": deployment,
            "chain_id": int(chain_id),
            "token_contract": token_contract,
            "farm_contract": farm_contract,
        }
        for key, value in expected.items():
            if self.data.get(key) != value:
                raise self.Mismatch(
                    f"Run log {key} is '{self.data.get(key)}' but this deployment uses '{value}'."
                )
        if str(self.data["deployer"]).lower() != str(deployer).lower():
            raise self.Mismatch(
                f"Run log was written by {self.data['deployer']}, not by {deployer}; "
                "only the original deployer account can resume it."
            )

    def addresses(self) -> Dict[str, str]:
        addresses = dict()
        token = self.get(STEP_DEPLOY_TOKEN)
        if token:
            addresses["token"] = token["address"]
        farm = self.get(STEP_DEPLOY_FARM)
        if farm:
            addresses["farm"] = farm["address"]
        return addresses

    def summary(self) -> str:
        lines = [
            f"Run: {self.run_id}",
            f"Deployment: {self.data['deployment']} (chain id {self.data['chain_id']})",
            f"Deployer: {self.data['deployer']}",
            f"Status: {self.status}",
        ]
        for entry in self.steps:
            details = ", ".join(
                f"{k}={v}" for k, v in entry.items() if k not in ("step", "completed_at")
            )
            lines.append(f"\t[done] {entry['step']} ({entry['completed_at']}) {details}")
        for step, pending in self.data["pending"].items():
            details = ", ".join(f"{k}={v}" for k, v in pending.items() if k != "submitted_at")
            lines.append(f"\t[pending] {step} ({pending['submitted_at']}) {details}")
        if self.failure:
            lines.append(
                f"\t[failed] {self.failure['step']}: "
                f"{self.failure['error']}: {self.failure['message']}"
            )
        next_step = self.next_step()
        if next_step and self.status != self.COMPLETED:
            lines.append(f"Next step: {next_step}")
        return "\n".join(lines)
