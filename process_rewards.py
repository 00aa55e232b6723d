import argparse
import csv
import io
import json
import math
import os
import pathlib
import sys
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_DOWN, InvalidOperation, getcontext
from typing import Dict, List, Optional, Tuple

import pandas as pd

PROJECT_ROOT = pathlib.Path(__file__).resolve().parent
DEFAULT_CONFIG_DIR = PROJECT_ROOT / "config"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "rewards-config.csv"
DEFAULT_CHAIN_ID = 42220

CSV_HEADER = "Address,Score,RewardWei,RewardReadable"
WEI_PER_TOKEN = Decimal(10) ** 18
CENT = Decimal("0.01")

# Wei amounts of large pools exceed float and default Decimal precision
getcontext().prec = 50


class ConfigurationError(ValueError):
    pass


@dataclass(frozen=True)
class RewardsConfig:
    total_reward: Decimal
    currency: str
    max_winners: int


DEFAULT_REWARDS_CONFIG: Dict[int, RewardsConfig] = {
    42220: RewardsConfig(total_reward=Decimal(250), currency="CELO", max_winners=30),
}


@dataclass(frozen=True)
class RawHolder:
    rank: int
    address: str  # lowercase
    address_nametag: str
    quantity: float  # the score
    percentage: float
    value: str


@dataclass(frozen=True)
class SkippedRow:
    line_no: int
    reason: str
    content: str


@dataclass(frozen=True)
class AllocatedReward:
    address: str
    score: str
    reward_wei: int
    reward_readable: str


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="process-rewards",
        description="Process a block explorer holder export into proportional season rewards",
    )
    parser.add_argument("--input", help="Holder CSV exported from the block explorer")
    parser.add_argument("--output", default=None,
                        help="Output base name; .csv is appended if missing (default ./<input>_processed.csv)")
    parser.add_argument("--chain", type=int, default=DEFAULT_CHAIN_ID,
                        help=f"Chain ID used to look up the reward pool (default {DEFAULT_CHAIN_ID})")
    parser.add_argument("--config", default=None,
                        help="Rewards config CSV (chain_id,total_reward,currency,max_winners)")
    parser.add_argument("--json", action="store_true", help="Also write a <base>.json rewards manifest")
    parser.add_argument("--strict", action="store_true", help="Fail if any input row is malformed")
    parser.add_argument("--dry-run", action="store_true", help="Compute but do not write files")
    parser.add_argument("--log-level", default="info", choices=["debug", "info", "warn"], help="Log verbosity")
    args = parser.parse_args(argv)
    if not args.input:
        parser.print_help()
        raise SystemExit(1)
    return args


def log(level: str, message: str, desired: str) -> None:
    order = {"debug": 10, "info": 20, "warn": 30}
    if order[level] >= order[desired]:
        print(message)


def fail(message: str) -> None:
    print(f"✗ Error: {message}", file=sys.stderr)
    raise SystemExit(1)


def write_texts_atomic(files: Dict[pathlib.Path, str]) -> None:
    """Stage every file as a temp file next to its target, then rename them all.

    Nothing is renamed until every temp file is fully written, so a failed run
    leaves none of the outputs behind.
    """
    staged: List[Tuple[str, pathlib.Path]] = []
    try:
        for path, content in files.items():
            path = pathlib.Path(path)
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
            staged.append((tmp_name, path))
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
                f.write(content)
        for tmp_name, path in staged:
            os.replace(tmp_name, path)
    except BaseException:
        for tmp_name, _ in staged:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
        raise


def write_text_atomic(path: pathlib.Path, content: str) -> None:
    write_texts_atomic({pathlib.Path(path): content})


def parse_rewards_config(path: pathlib.Path) -> Dict[int, RewardsConfig]:
    df = pd.read_csv(path, dtype=str)
    cols = {c.strip().lower(): c for c in df.columns}
    missing = [c for c in ("chain_id", "total_reward", "currency", "max_winners") if c not in cols]
    if missing:
        raise ConfigurationError(f"{path} missing columns: {missing}")

    table: Dict[int, RewardsConfig] = {}
    for _, row in df.iterrows():
        try:
            chain_id = int(str(row[cols["chain_id"]]).strip())
            total_reward = Decimal(str(row[cols["total_reward"]]).strip().replace(",", ""))
            max_winners = int(str(row[cols["max_winners"]]).strip())
        except (ValueError, InvalidOperation) as e:
            raise ConfigurationError(f"{path}: bad config row {row.to_dict()}: {e}") from e
        currency = str(row[cols["currency"]]).strip()
        if chain_id in table:
            raise ConfigurationError(f"{path}: duplicate chain_id {chain_id}")
        if not total_reward.is_finite() or total_reward <= 0 or max_winners <= 0:
            raise ConfigurationError(f"{path}: chain {chain_id} needs a positive total_reward and max_winners")
        table[chain_id] = RewardsConfig(total_reward=total_reward, currency=currency, max_winners=max_winners)
    return table


def load_rewards_config(path: Optional[pathlib.Path] = None) -> Dict[int, RewardsConfig]:
    if path is None:
        return dict(DEFAULT_REWARDS_CONFIG)
    return parse_rewards_config(pathlib.Path(path))


def get_rewards_config(chain_id: int, table: Dict[int, RewardsConfig]) -> RewardsConfig:
    try:
        return table[chain_id]
    except KeyError:
        supported = ", ".join(str(c) for c in sorted(table)) or "none"
        raise ConfigurationError(f"Unsupported chain {chain_id} (configured chains: {supported})") from None


def split_csv_line(line: str) -> List[str]:
    # Quotes toggle state and are dropped; commas inside quotes are kept
    fields: List[str] = []
    current = []
    in_quotes = False
    for ch in line:
        if ch == '"':
            in_quotes = not in_quotes
        elif ch == "," and not in_quotes:
            fields.append("".join(current).strip())
            current = []
        else:
            current.append(ch)
    fields.append("".join(current).strip())
    return fields


def to_float(value: str) -> float:
    try:
        return float(value)
    except ValueError:
        return 0.0


def parse_csv_with_report(content: str) -> Tuple[List[RawHolder], List[SkippedRow]]:
    holders: List[RawHolder] = []
    skipped: List[SkippedRow] = []
    lines = content.strip().splitlines()
    # Line 0 is the header
    for i, line in enumerate(lines[1:], start=1):
        if not line.strip():
            continue
        fields = split_csv_line(line)
        if len(fields) < 5:
            skipped.append(SkippedRow(line_no=i + 1, reason=f"expected at least 5 fields, got {len(fields)}",
                                      content=line))
            continue
        quantity = to_float(fields[3].replace(",", ""))
        if not math.isfinite(quantity) or quantity < 0:
            skipped.append(SkippedRow(line_no=i + 1, reason=f"quantity {fields[3]!r} is negative or not finite",
                                      content=line))
            continue
        percentage = to_float(fields[4].replace("%", ""))
        try:
            rank = int(fields[0].replace(",", ""))
        except ValueError:
            rank = i
        holders.append(RawHolder(
            rank=rank,
            address=fields[1].lower(),
            address_nametag=fields[2],
            quantity=quantity,
            percentage=percentage if math.isfinite(percentage) else 0.0,
            value=fields[5] if len(fields) > 5 else "",
        ))
    return holders, skipped


def parse_csv(content: str) -> List[RawHolder]:
    holders, _ = parse_csv_with_report(content)
    return holders


def format_score(quantity: float) -> str:
    q = float(quantity)
    if q.is_integer() and abs(q) < 1e21:
        return str(int(q))
    return repr(q)


def format_token_amount(wei: int, places: int = 6) -> str:
    return f"{Decimal(wei) / WEI_PER_TOKEN:.{places}f}"


def process_rewards(
    holders: List[RawHolder],
    chain_id: int,
    rewards_config: Optional[Dict[int, RewardsConfig]] = None,
    log_level: str = "info",
) -> List[AllocatedReward]:
    table = DEFAULT_REWARDS_CONFIG if rewards_config is None else rewards_config
    config = get_rewards_config(chain_id, table)
    for h in holders:
        if not math.isfinite(h.quantity) or h.quantity < 0:
            raise ValueError(f"Holder {h.address} has invalid quantity {h.quantity!r}")

    log("info", f"\nProcessing rewards for chain {chain_id} ({config.currency})", log_level)
    log("info", f"   Total reward pool: {config.total_reward} {config.currency}", log_level)
    log("info", f"   Max winners: {config.max_winners}", log_level)
    log("info", f"   Total holders in CSV: {len(holders)}", log_level)

    # sorted() is stable, so equal quantities keep input order
    ranked = sorted(holders, key=lambda h: -h.quantity)
    eligible = ranked[:min(len(ranked), config.max_winners)]
    log("info", f"   Eligible winners: {len(eligible)}", log_level)

    total_score = sum(h.quantity for h in eligible)
    log("info", f"   Total score of winners: {total_score:.2f}", log_level)
    if total_score <= 0:
        log("warn", "⚠ Total score of eligible holders is zero; nothing to distribute", log_level)
        return []

    pool = float(config.total_reward)
    processed: List[AllocatedReward] = []
    total_distributed = 0
    for holder in eligible:
        if holder.quantity <= 0:
            continue
        proportion = holder.quantity / total_score
        reward_float = pool * proportion
        # Floor to cents in Decimal; float only feeds the estimate
        reward_rounded = Decimal(repr(reward_float)).quantize(CENT, rounding=ROUND_DOWN)
        reward_wei = int(reward_rounded.scaleb(18))
        total_distributed += reward_wei
        processed.append(AllocatedReward(
            address=holder.address,
            score=format_score(holder.quantity),
            reward_wei=reward_wei,
            reward_readable=f"{reward_rounded:.2f}",
        ))
        log("debug", f"   {holder.address}: {holder.quantity} -> {reward_rounded} {config.currency}", log_level)

    log("info", f"   Total to distribute: {format_token_amount(total_distributed)} {config.currency}", log_level)
    return processed


def generate_csv(rewards: List[AllocatedReward]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(CSV_HEADER.split(","))
    for r in rewards:
        fields = [r.address, r.score, str(r.reward_wei), r.reward_readable]
        if any("," in f or "\n" in f or '"' in f for f in fields):
            raise ValueError(f"Reward row for {r.address!r} contains a field separator")
        writer.writerow(fields)
    return buf.getvalue()


def generate_manifest(rewards: List[AllocatedReward], generated_at: Optional[str] = None) -> str:
    if generated_at is None:
        generated_at = utc_timestamp()
    manifest = {
        "generatedAt": generated_at,
        "totalRecipients": len(rewards),
        "rewards": [
            {"address": r.address, "amount": str(r.reward_wei), "amountReadable": r.reward_readable}
            for r in rewards
        ],
    }
    return json.dumps(manifest, indent=2)


def utc_timestamp() -> str:
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def output_base(input_path: pathlib.Path, output: Optional[str]) -> str:
    if output:
        return output[:-4] if output.endswith(".csv") else output
    # Default output goes to the working directory, not next to the input
    return input_path.stem + "_processed"


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    log_level = args.log_level
    input_path = pathlib.Path(args.input)

    config_path = pathlib.Path(args.config) if args.config else None
    if config_path is None and DEFAULT_CONFIG_FILE.exists():
        config_path = DEFAULT_CONFIG_FILE

    try:
        table = load_rewards_config(config_path)
        log("info", f"\nReading input: {input_path}", log_level)
        content = input_path.read_text(encoding="utf-8-sig")
        holders, skipped = parse_csv_with_report(content)
        log("info", f"   Parsed {len(holders)} holders", log_level)
        if skipped:
            for row in skipped:
                log("debug", f"   skipped line {row.line_no}: {row.reason}: {row.content!r}", log_level)
            lines = ", ".join(str(row.line_no) for row in skipped[:10])
            log("warn", f"⚠ Skipped {len(skipped)} malformed row(s) (lines {lines}"
                        f"{', ...' if len(skipped) > 10 else ''})", log_level)
            if args.strict:
                raise ValueError(f"{len(skipped)} malformed row(s) in {input_path} and --strict is set")
        rewards = process_rewards(holders, args.chain, table, log_level)
        csv_output = generate_csv(rewards)
        base = output_base(input_path, args.output)
        csv_path = pathlib.Path(base + ".csv")
        if args.dry_run:
            log("info", f"\nDry run: would write {csv_path}", log_level)
        else:
            outputs = {csv_path: csv_output}
            json_path = pathlib.Path(base + ".json")
            if args.json:
                outputs[json_path] = generate_manifest(rewards)
            write_texts_atomic(outputs)
            log("info", f"\n✓ CSV written to: {csv_path}", log_level)
            if args.json:
                log("info", f"✓ JSON manifest written to: {json_path}", log_level)
    except (ConfigurationError, ValueError, OSError) as e:
        fail(str(e))

    log("info", "\nSummary:", log_level)
    log("info", f"   Recipients: {len(rewards)}", log_level)
    if rewards:
        log("info", "   Top 5 rewards:", log_level)
        for i, r in enumerate(rewards[:5], start=1):
            log("info", f"     {i}. {r.address[:10]}... : {r.reward_readable}", log_level)


if __name__ == "__main__":
    main()
