# backend/mindcraft/judge.py
"""Clients for the remote code-execution service (Piston or Judge0)."""
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

import requests

from . import config
from .errors import ExecutionError, UnsupportedLanguage
from .schemas import TestCaseResult

logger = logging.getLogger(__name__)

SUPPORTED_LANGUAGES = {
    "python": "Python 3",
    "cpp": "C++ (GCC)",
    "javascript": "JavaScript (Node.js)",
    "java": "Java (OpenJDK)",
    "c": "C (GCC)",
}

JUDGE0_LANGUAGE_IDS = {
    "python": 71,
    "cpp": 54,
    "javascript": 63,
    "java": 62,
    "c": 50,
}


@dataclass
class ExecutionResult:
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    execution_time: float = 0.0  # ms
    error: Optional[str] = None  # compile / runtime failure reported by the service


def normalize_output(output: Optional[str]) -> str:
    return (output or "").strip().replace("\r\n", "\n")


def check_language(language: str):
    if language not in SUPPORTED_LANGUAGES:
        raise UnsupportedLanguage(language, SUPPORTED_LANGUAGES)


class ExecutionClient(ABC):
    def __init__(self, timeout: float = None, throttle: float = None):
        self.timeout = config.EXECUTION_TIMEOUT_SECS if timeout is None else timeout
        self.throttle = config.EXECUTION_THROTTLE_SECS if throttle is None else throttle

    @abstractmethod
    def execute(self, language: str, code: str, stdin: str = "") -> ExecutionResult:
        """Run the program once with the given stdin."""

    def execute_test_cases(self, language: str, code: str, test_cases: Iterable[Tuple[str, str]]) -> List[TestCaseResult]:
        """
        Run the program once per (input, expected output) pair, sequentially.
        A failing call is recorded as a failed test case; the remaining cases
        still run.
        """
        check_language(language)

        results = []
        for i, (stdin, expected) in enumerate(test_cases):
            if i and self.throttle:
                time.sleep(self.throttle)  # public APIs rate-limit bursts

            expected_output = normalize_output(expected)
            try:
                result = self.execute(language, code, stdin)
            except (requests.RequestException, ExecutionError, ValueError) as e:
                logger.exception("error executing test case %s", i + 1)
                results.append(TestCaseResult(
                    passed=False,
                    actual_output="",
                    expected_output=expected_output,
                    error=str(e) or "Execution failed",
                    execution_time=0,
                ))
                continue

            actual_output = normalize_output(result.stdout)
            passed = result.error is None and actual_output == expected_output
            if not passed:
                logger.debug(
                    "test case %s failed: input=%r expected=%r actual=%r stderr=%r",
                    i + 1, stdin, expected_output, actual_output, result.stderr,
                )
            results.append(TestCaseResult(
                passed=passed,
                actual_output=actual_output,
                expected_output=expected_output,
                error=result.stderr or result.error or None,
                execution_time=result.execution_time,
            ))
        return results


class PistonClient(ExecutionClient):
    def __init__(self, base_url: str = None, **kwargs):
        super().__init__(**kwargs)
        self.base_url = (base_url or config.PISTON_URL).rstrip("/")

    def execute(self, language: str, code: str, stdin: str = "") -> ExecutionResult:
        check_language(language)
        payload = {
            "language": language,
            "version": "*",
            "files": [{"content": code}],
            "stdin": stdin,
            "args": [],
            "run_timeout": 10000,
            "compile_timeout": 10000,
        }
        resp = requests.post(f"{self.base_url}/execute", json=payload, timeout=self.timeout)
        if not resp.ok:
            raise ExecutionError(f"Execution failed: {resp.status_code} {resp.reason}")

        data = resp.json()
        compile_stage = data.get("compile") or {}
        if compile_stage.get("code"):
            return ExecutionResult(
                stderr=compile_stage.get("stderr") or "",
                exit_code=compile_stage.get("code"),
                error=f"Compilation Error: {compile_stage.get('output') or compile_stage.get('stderr') or ''}".strip(),
            )

        run = data.get("run") or {}
        return ExecutionResult(
            stdout=run.get("stdout") or "",
            stderr=run.get("stderr") or "",
            exit_code=run.get("code") or 0,
            execution_time=float(run.get("time") or 0),
        )

    def runtimes(self):
        resp = requests.get(f"{self.base_url}/runtimes", timeout=self.timeout)
        resp.raise_for_status()
        return resp.json()


class Judge0Client(ExecutionClient):
    # 3 = Accepted, 4 = Wrong Answer, 5 = Time Limit Exceeded, 6 = Compilation Error, 7+ = runtime errors
    FIRST_ERROR_STATUS = 6

    def __init__(self, host: str = None, api_key: str = None, self_hosted: bool = None, **kwargs):
        super().__init__(**kwargs)
        self.host = host or config.JUDGE0_HOST
        self.api_key = config.RAPIDAPI_KEY if api_key is None else api_key
        self.self_hosted = config.JUDGE0_SELF_HOSTED if self_hosted is None else self_hosted

        if self.self_hosted:
            if self.host.startswith("http://") or self.host.startswith("https://"):
                self.base_url = self.host
            else:
                self.base_url = f"http://{self.host}"
        else:
            self.base_url = f"https://{self.host}"
            if not self.api_key:
                logger.warning("Judge0 API key not found. Code execution will fail.")

    def headers(self):
        headers = {"Content-Type": "application/json"}
        if not self.self_hosted:
            headers["X-RapidAPI-Key"] = self.api_key
            headers["X-RapidAPI-Host"] = self.host
        return headers

    def execute(self, language: str, code: str, stdin: str = "") -> ExecutionResult:
        check_language(language)
        payload = {
            "source_code": code,
            "language_id": JUDGE0_LANGUAGE_IDS[language],
            "stdin": stdin,
        }
        resp = requests.post(
            f"{self.base_url}/submissions",
            params={"base64_encoded": "false", "wait": "true"},
            json=payload,
            headers=self.headers(),
            timeout=self.timeout,
        )
        if not resp.ok:
            raise ExecutionError(f"Judge0 API error: {resp.status_code} {resp.reason} - {resp.text}")

        data = resp.json()
        status = data.get("status") or {"id": 0, "description": "Unknown"}
        error = None
        if data.get("compile_output"):
            error = f"Compilation Error: {data['compile_output']}"
        elif status.get("id", 0) >= self.FIRST_ERROR_STATUS:
            error = status.get("description") or "Execution failed"

        return ExecutionResult(
            stdout=data.get("stdout") or "",
            stderr=data.get("stderr") or "",
            exit_code=data.get("exit_code") or 0,
            execution_time=float(data.get("time") or 0) * 1000,
            error=error,
        )


def create_execution_client(backend: str = None) -> ExecutionClient:
    backend = (backend or config.EXECUTION_BACKEND).lower()
    if backend == "judge0":
        return Judge0Client()
    if backend == "piston":
        return PistonClient()
    raise ValueError(f"unknown execution backend: {backend}")
