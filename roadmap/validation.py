from __future__ import annotations

import logging
import re
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import List

logger = logging.getLogger(__name__)

_HEADER_KEYWORDS = {"gantt", "title", "dateFormat", "axisFormat", "todayMarker", "section"}
_KNOWN_TAGS = {"milestone", "crit", "done", "active"}


@dataclass
class ValidationResult:
    valid: bool
    error: str | None = None
    skipped: bool = False


def check_common_issues(chart: str) -> List[str]:
    warnings: List[str] = []
    for number, raw in enumerate(chart.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("%%") or line.split()[0] in _HEADER_KEYWORDS:
            continue

        if line.count(":") != 1:
            warnings.append(f"Line {number}: task needs exactly one ':' between name and metadata")
            continue

        _, meta = line.split(":", 1)
        parts = [p.strip() for p in meta.split(",")]
        tags = [p for p in parts if p in _KNOWN_TAGS]
        fields = [p for p in parts if p not in _KNOWN_TAGS]
        if len(fields) < 3:
            warnings.append(f"Line {number}: task is missing fields (id, start date, duration)")
        elif len(fields) > 3:
            warnings.append(f"Line {number}: task name or id may contain a comma")
        elif not re.fullmatch(r"\d+d", fields[-1]):
            warnings.append(f"Line {number}: duration '{fields[-1]}' is not in days")
        if "milestone" in tags and fields and fields[-1] != "0d":
            warnings.append(f"Line {number}: milestone should have a 0d duration")
    return warnings


def find_mmdc() -> str | None:
    return shutil.which("mmdc")


def validate_with_mmdc(chart: str, mmdc: str | None = None, timeout: int = 60) -> ValidationResult:
    mmdc = mmdc or find_mmdc()
    if not mmdc:
        logger.info("roadmap.validate.mmdc_missing")
        return ValidationResult(valid=True, skipped=True)

    with tempfile.TemporaryDirectory(prefix="roadmap-mermaid-") as tmp:
        source = Path(tmp) / "chart.mmd"
        output = Path(tmp) / "chart.svg"
        source.write_text(chart, encoding="utf-8")
        try:
            subprocess.run(
                [mmdc, "-i", str(source), "-o", str(output), "--quiet"],
                capture_output=True,
                text=True,
                check=True,
                timeout=timeout,
            )
        except subprocess.CalledProcessError as exc:
            message = (exc.stderr or exc.stdout or str(exc)).strip()
            lines = chart.splitlines()
            match = re.search(r"line (\d+)", message, re.IGNORECASE)
            if match:
                index = int(match.group(1))
                if 0 < index <= len(lines):
                    message = f"{message}\nLine {index}: {lines[index - 1]}"
            logger.error("roadmap.validate.failed", extra={"error": message})
            return ValidationResult(valid=False, error=message)
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.warning("roadmap.validate.mmdc_unusable", extra={"error": str(exc)})
            return ValidationResult(valid=True, skipped=True)

    logger.info("roadmap.validate.ok")
    return ValidationResult(valid=True)
