"""vbuscsv command-line tool."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from concurrent.futures import ProcessPoolExecutor
from datetime import datetime, timedelta, timezone, tzinfo
from pathlib import Path
from typing import TextIO
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .assembler import LeadCommandBoundary, Schema
from .errors import DecodeError, SinkWriteFailure, SpecificationError
from .framing import FrameSynchronizer
from .reservoir import ByteReservoir
from .series import summarize
from .session import DecodeConfig, DecodeSession, DecodeSummary
from .specification import SpecificationTable, default_table
from .writer import TableFormat

logger = logging.getLogger(__name__)


def parse_datecode(name: str, tz: tzinfo = timezone.utc) -> datetime | None:
    """Midnight of the YYYYMMDD date a recording file name starts with."""
    code = name[:8]
    if len(code) != 8 or not code.isdigit():
        return None
    try:
        return datetime(int(code[:4]), int(code[4:6]), int(code[6:8]), tzinfo=tz)
    except ValueError:
        return None


def _parse_time(text: str, tz: tzinfo) -> datetime:
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=tz)
    return dt


def _zone(name: str) -> tzinfo:
    if name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except ZoneInfoNotFoundError:
        raise SystemExit(f"Error: unknown time zone {name!r}") from None


def _load_table(args: argparse.Namespace) -> SpecificationTable:
    if args.spec_file:
        try:
            return SpecificationTable.load(args.spec_file)
        except (OSError, SpecificationError) as exc:
            raise SystemExit(f"Error: {exc}")
    return default_table()


def output_path(out_dir: Path, stem: str, pair: tuple[int, int]) -> Path:
    return out_dir / f"{stem}_{pair[0]:04X}_{pair[1]:04X}.csv"


class FileSinks:
    """Opens one output file per device pair on first use."""

    def __init__(self, out_dir: Path, stem: str):
        self.out_dir = out_dir
        self.stem = stem
        self.paths: list[Path] = []
        self._files: dict[tuple[int, int], TextIO] = {}

    def __call__(self, schema: Schema) -> TextIO:
        f = self._files.get(schema.pair)
        if f is None:
            path = output_path(self.out_dir, self.stem, schema.pair)
            try:
                f = open(path, "w", encoding="utf-8", newline="")
            except OSError as exc:
                raise SinkWriteFailure(f"cannot open {path}: {exc}") from exc
            self._files[schema.pair] = f
            self.paths.append(path)
        return f

    def close(self) -> None:
        for f in self._files.values():
            f.close()
        self._files.clear()

    def discard(self) -> None:
        self.close()
        for path in self.paths:
            path.unlink(missing_ok=True)


def _is_fresh(path: Path, out_dir: Path) -> bool:
    """True if earlier outputs exist and are newer than the recording."""
    outputs = list(out_dir.glob(f"{path.stem}_*.csv"))
    if not outputs:
        return False
    mtime = path.stat().st_mtime
    return all(o.stat().st_mtime >= mtime for o in outputs)


def convert_file(path: Path, out_dir: Path, table: SpecificationTable,
                 config: DecodeConfig, fmt: TableFormat) -> DecodeSummary:
    """Convert one recording into one table per device pair."""
    data = path.read_bytes()
    sinks = FileSinks(out_dir, path.stem)
    try:
        summary = DecodeSession(table, config, sinks, fmt).decode(data)
    except BaseException:
        sinks.discard()
        raise
    sinks.close()
    if not sinks.paths:
        logger.info("%s: no records, nothing written", path)
    for p in sinks.paths:
        logger.info("%s -> %s", path, p)
    return summary


def _format_summary(summary: DecodeSummary) -> str:
    text = (f"{summary.frames_seen} frames, {summary.frames_rejected} rejected, "
            f"{summary.frames_unrecognized} unrecognized, "
            f"{summary.records_emitted} records")
    if summary.truncated:
        text += ", truncated"
    return text


def _decode_config(args: argparse.Namespace, path: Path, tz: tzinfo) -> DecodeConfig:
    if args.start:
        start = _parse_time(args.start, tz)
    else:
        start = parse_datecode(path.name)
        if start is None:
            raise ValueError(f"{path.name} has no YYYYMMDD prefix, pass --start")
    boundary = None
    if args.lead_command is not None:
        boundary = LeadCommandBoundary(args.lead_command)
    return DecodeConfig(
        start=start,
        interval=timedelta(seconds=args.interval),
        boundary=boundary,
        late_fields="drop" if args.drop_late_fields else "error",
        ts_min=_parse_time(args.ts_min, tz) if args.ts_min else None,
        ts_max=_parse_time(args.ts_max, tz) if args.ts_max else None,
    )


def cmd_convert(args: argparse.Namespace) -> int:
    """Convert recordings into delimited tables."""
    tz = _zone(args.tz)
    table = _load_table(args)
    delimiter = "\t" if args.delimiter in ("\\t", "tab") else args.delimiter
    fmt = TableFormat(delimiter=delimiter, time_format=args.time_format, tz=tz)

    failures = 0
    jobs: list[tuple[Path, Path, DecodeConfig]] = []
    for name in args.files:
        path = Path(name)
        out_dir = Path(args.output_dir) if args.output_dir else path.parent
        try:
            out_dir.mkdir(parents=True, exist_ok=True)
            if not args.force and _is_fresh(path, out_dir):
                logger.info("skipping %s, outputs are up to date", path)
                continue
            config = _decode_config(args, path, tz)
        except (OSError, ValueError) as exc:
            logger.error("%s: %s", path, exc)
            failures += 1
            continue
        jobs.append((path, out_dir, config))

    if args.jobs > 1 and len(jobs) > 1:
        with ProcessPoolExecutor(max_workers=args.jobs) as pool:
            futures = [(path, pool.submit(convert_file, path, out_dir,
                                          table, config, fmt))
                       for path, out_dir, config in jobs]
            for path, future in futures:
                try:
                    summary = future.result()
                except (OSError, DecodeError) as exc:
                    logger.error("%s: %s", path, exc)
                    failures += 1
                    continue
                print(f"{path}: {_format_summary(summary)}")
    else:
        for path, out_dir, config in jobs:
            try:
                summary = convert_file(path, out_dir, table, config, fmt)
            except (OSError, DecodeError) as exc:
                logger.error("%s: %s", path, exc)
                failures += 1
                continue
            print(f"{path}: {_format_summary(summary)}")
    return 1 if failures else 0


def cmd_frames(args: argparse.Namespace) -> int:
    """Dump every valid frame of a recording."""
    table = _load_table(args)
    sync = FrameSynchronizer(ByteReservoir(Path(args.file).read_bytes()))
    for frame in sync.frames():
        resolved = table.resolve(frame)
        if resolved.recognized:
            body = ", ".join(f"{f.label}={f.scaled_value:.{f.descriptor.precision}f}"
                             for f in resolved.fields)
        else:
            body = f"raw={frame.payload.hex()}"
        print(f"[{frame.frame_offset:8d}] 0x{frame.source_id:04X}->"
              f"0x{frame.destination_id:04X} v{frame.protocol_version:02X} "
              f"cmd=0x{frame.command_id:04X}: {body}")
    rejected = ", ".join(f"{k}={v}" for k, v in sorted(sync.rejected.items()))
    print(f"\n{sync.frames_seen} frames, {sync.corrupted} rejected"
          + (f" ({rejected})" if rejected else "")
          + (", truncated" if sync.truncated else ""))
    return 0


def cmd_info(args: argparse.Namespace) -> int:
    """Print summary info about a recording."""
    path = Path(args.file)
    tz = _zone(args.tz)
    data = path.read_bytes()
    start = parse_datecode(path.name) or datetime(1970, 1, 1, tzinfo=timezone.utc)
    config = DecodeConfig(start=start, interval=timedelta(seconds=args.interval),
                          late_fields="drop")
    session = DecodeSession(_load_table(args), config, keep_records=True)
    summary = session.decode(data)

    print(f"File:       {path}")
    print(f"Size:       {os.path.getsize(path):,} bytes")
    print(f"Frames:     {summary.frames_seen:,}")
    print(f"Rejected:   {summary.frames_rejected:,}"
          + (f" ({', '.join(f'{k}={v}' for k, v in sorted(summary.rejected.items()))})"
             if summary.rejected else ""))
    print(f"Unknown:    {summary.frames_unrecognized:,}")
    print(f"Skipped:    {summary.bytes_skipped:,} bytes")
    print(f"Truncated:  {'yes' if summary.truncated else 'no'}")
    print(f"Records:    {summary.records_emitted:,}")

    fmt = TableFormat(tz=tz)
    for pair, schema in summary.schemas.items():
        records = [r for r in session.records if r.pair == pair]
        print(f"\nDevice pair 0x{pair[0]:04X} -> 0x{pair[1]:04X} "
              f"({len(records)} records)")
        if records:
            print(f"  {fmt.format_time(records[0].timestamp)} .. "
                  f"{fmt.format_time(records[-1].timestamp)}")
        print(f"  {'Column':<32s}  {'Count':>6s}  {'Min':>10s}  {'Max':>10s}  {'Mean':>10s}")
        for s in summarize(records):
            print(f"  {s.heading:<32s}  {s.count:6d}  {s.minimum:10.3f}  "
                  f"{s.maximum:10.3f}  {s.mean:10.3f}")
        raw = [c.heading for c in schema.columns if c.raw]
        if raw:
            print(f"  raw payload columns: {', '.join(raw)}")
    return 0


def cmd_spec(args: argparse.Namespace) -> int:
    """Print the specification table."""
    table = _load_table(args)
    if args.json:
        print(json.dumps(table.to_dict(), indent=2, ensure_ascii=False))
        return 0
    for p in table:
        print(f"0x{p.source_id:04X} -> 0x{p.destination_id:04X} "
              f"cmd=0x{p.command_id:04X}  {p.name}")
        for d in p.fields:
            print(f"    {d.label:28s} offset={d.byte_offset:3d} "
                  f"width={d.byte_width} {'signed  ' if d.is_signed else 'unsigned'} "
                  f"scale={d.scale_factor} {d.unit_label}")
        print()
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="vbuscsv", description="Datalogger recording to CSV converter")
    parser.add_argument("-v", "--verbose", action="count", default=0)
    parser.add_argument("-q", "--quiet", action="store_true")
    sub = parser.add_subparsers(dest="command")

    def add_common(p: argparse.ArgumentParser) -> None:
        p.add_argument("--spec-file", help="JSON specification table")

    # convert
    p_convert = sub.add_parser("convert", help="Convert recordings to CSV")
    p_convert.add_argument("files", nargs="+", help="Recording files")
    p_convert.add_argument("-o", "--output-dir",
                           help="Output directory (default: beside input)")
    p_convert.add_argument("--start", help="Recording start (ISO 8601); "
                           "default: YYYYMMDD prefix of the file name")
    p_convert.add_argument("--interval", type=float, default=60.0,
                           help="Sampling interval in seconds")
    p_convert.add_argument("--tz", default="UTC", help="Output time zone")
    p_convert.add_argument("--delimiter", default=",",
                           help="Cell delimiter ('tab' for tabs)")
    p_convert.add_argument("--time-format", default="%Y-%m-%d %H:%M:%S")
    p_convert.add_argument("--ts-min", help="Drop records before this time")
    p_convert.add_argument("--ts-max", help="Drop records after this time")
    p_convert.add_argument("--lead-command", type=lambda s: int(s, 0),
                           help="Command id that opens each sampling cycle")
    p_convert.add_argument("--drop-late-fields", action="store_true",
                           help="Drop fields missing from the frozen schema "
                                "instead of aborting the file")
    p_convert.add_argument("--force", action="store_true",
                           help="Convert even if outputs are up to date")
    p_convert.add_argument("-j", "--jobs", type=int, default=1,
                           help="Files decoded in parallel")
    add_common(p_convert)

    # frames
    p_frames = sub.add_parser("frames", help="Dump decoded frames")
    p_frames.add_argument("file", help="Recording file")
    add_common(p_frames)

    # info
    p_info = sub.add_parser("info", help="Show summary info about a recording")
    p_info.add_argument("file", help="Recording file")
    p_info.add_argument("--interval", type=float, default=60.0)
    p_info.add_argument("--tz", default="UTC")
    add_common(p_info)

    # spec
    p_spec = sub.add_parser("spec", help="Show the specification table")
    p_spec.add_argument("--json", action="store_true", help="Print as JSON")
    add_common(p_spec)

    args = parser.parse_args(argv)

    if args.quiet:
        level = logging.ERROR
    elif args.verbose:
        level = logging.DEBUG if args.verbose > 1 else logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(level=level,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if args.command == "convert":
        return cmd_convert(args)
    elif args.command == "frames":
        return cmd_frames(args)
    elif args.command == "info":
        return cmd_info(args)
    elif args.command == "spec":
        return cmd_spec(args)
    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
