import json
import argparse
from typing import Iterable, Iterator, Optional

from colorama import init, Fore, Style

init()  # Initialize colorama

COLORS = {
    "DEBUG": Fore.BLUE,
    "INFO": Fore.GREEN,
    "WARNING": Fore.YELLOW,
    "ERROR": Fore.RED,
    "CRITICAL": Fore.RED + Style.BRIGHT
}

LEVEL_PRIORITIES = {
    "DEBUG": 0,
    "INFO": 1,
    "WARNING": 2,
    "ERROR": 3,
    "CRITICAL": 4
}

CONTEXT_FIELDS = ["operation", "run_id", "mode", "cell_id", "cell_level", "attempt", "status_code", "outcome"]


def format_log_entry(entry: str) -> str:
    try:
        data = json.loads(entry)
    except json.JSONDecodeError:
        return entry  # Return the original line if not valid JSON

    level = data.get("level", "INFO")
    color = COLORS.get(level, "")
    reset = Style.RESET_ALL

    timestamp = data.get("timestamp", "")
    message = data.get("message", "")

    extra = {k: v for k, v in data.items() if k not in ["timestamp", "level", "logger", "message"]}

    # Key context fields; run ids are long, the first block is enough to correlate
    context = []
    for field in CONTEXT_FIELDS:
        if field in extra and extra[field] is not None:
            value = extra[field]
            if field == "run_id":
                value = str(value)[:8]
            context.append(f"{field}={value}")

    if "metrics" in extra and isinstance(extra["metrics"], dict):
        metrics = extra["metrics"]
        context.append(f"requests={metrics.get('total_requests', 0)}")
        context.append(f"unique={metrics.get('unique_results', 0)}")
        context.append(f"efficiency={metrics.get('efficiency_ratio', 0)}")

    if "summary" in extra and isinstance(extra["summary"], dict):
        summary = extra["summary"]
        context.append(f"cells={summary.get('cells_searched', 0)}")
        context.append(f"inserted={summary.get('inserted', 0)}")
        context.append(f"updated={summary.get('updated', 0)}")

    context_str = " | ".join(context)
    return f"{timestamp} {color}{level.ljust(8)}{reset} {message} [{context_str}]"


def filter_lines(
        lines: Iterable[str],
        level: Optional[str] = None,
        text: Optional[str] = None,
        operation: Optional[str] = None,
        run_id: Optional[str] = None,
        ) -> Iterator[str]:
    """Yield the formatted lines that pass every given filter. Non-JSON lines pass through unformatted."""
    min_priority = LEVEL_PRIORITIES.get(level, 0)

    for line in lines:
        line = line.strip()
        if not line:
            continue

        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            yield line
            continue

        if level and LEVEL_PRIORITIES.get(data.get("level", ""), 0) < min_priority:
            continue
        if text and text.lower() not in line.lower():
            continue
        if operation and data.get("operation", "") != operation:
            continue
        # Accept a prefix so the shortened id printed by the viewer works as a filter
        if run_id and not str(data.get("run_id") or "").startswith(run_id):
            continue

        yield format_log_entry(line)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Pretty print adaptive sync JSON log files")
    parser.add_argument("logfile", help="Path to the JSON log file")
    parser.add_argument("-l", "--level", choices=list(LEVEL_PRIORITIES),
                        help="Minimum log level to display")
    parser.add_argument("-f", "--filter", help="Only show logs containing this text")
    parser.add_argument("-o", "--operation", help="Filter by operation type")
    parser.add_argument("-r", "--run-id", help="Only show logs for this run (prefix match)")
    args = parser.parse_args(argv)

    with open(args.logfile, 'r') as f:
        for formatted in filter_lines(f, args.level, args.filter, args.operation, args.run_id):
            print(formatted)


if __name__ == "__main__":
    main()
