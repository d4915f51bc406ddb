import json
import sys
from pathlib import Path

def normalize_timestamps(log_text: str, *, zone: str | None = None) -> str:
    """
    Normalize the 'ts_ms' values of a JSONL log:
    - subtract the first ts_ms found
    - divide by 1e3 (milliseconds -> seconds), stored as 't_s'
    - optionally keep only one zone's records

    Lines that are not JSON objects are passed through untouched.
    """
    out: list[str] = []
    t0: int | None = None

    for line in log_text.splitlines():
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            out.append(line)
            continue
        if not isinstance(record, dict) or "ts_ms" not in record:
            out.append(line)
            continue
        if zone is not None and record.get("zone") != zone:
            continue

        ts_ms = int(record.pop("ts_ms"))
        if t0 is None:
            t0 = ts_ms
        out.append(json.dumps({"t_s": round((ts_ms - t0) / 1e3, 3), **record}, separators=(",", ":")))

    return "\n".join(out)


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("usage: normalize_log.py <log.jsonl> [zone]")
        sys.exit(2)

    src = Path(sys.argv[1])
    normalized = normalize_timestamps(
        src.read_text(encoding="utf-8"),
        zone=sys.argv[2] if len(sys.argv) > 2 else None,
    )

    out_path = src.with_suffix(".normalized.jsonl")
    out_path.write_text(normalized, encoding="utf-8")
    print(out_path)
