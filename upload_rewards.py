import argparse
import json
import pathlib
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

import pandas as pd

from checksum import ZERO_ADDRESS, to_checksum_address
from process_rewards import (CSV_HEADER, fail, format_token_amount, log, utc_timestamp, write_text_atomic,
                             write_texts_atomic)

CHUNK_SIZE = 100  # recipients per setSeasonRewards call, keeps each tx under the gas limit
FORMATS = ["foundry", "cast", "raw"]
WEI_RE = re.compile(r"^[0-9]+$")


class RewardsFileError(ValueError):
    pass


@dataclass(frozen=True)
class ChecksummedReward:
    address: str
    score: str
    amount: int  # wei
    amount_readable: str


@dataclass(frozen=True)
class RewardsData:
    generated_at: str
    total_recipients: int
    rewards: List[ChecksummedReward]

    @property
    def total_wei(self) -> int:
        return sum(r.amount for r in self.rewards)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="upload-rewards",
        description="Generate setSeasonRewards batches (Foundry script, cast commands or raw lists) from processed rewards",
    )
    parser.add_argument("--input", help="Rewards CSV (or JSON manifest) from process-rewards")
    parser.add_argument("--contract", default=ZERO_ADDRESS, help="SeasonReward contract address")
    parser.add_argument("--output", default=None, help="Output file; prints to stdout if omitted")
    parser.add_argument("--format", default="foundry", choices=FORMATS,
                        help="Output format: foundry (default), cast, or raw")
    parser.add_argument("--log-level", default="info", choices=["debug", "info", "warn"], help="Log verbosity")
    args = parser.parse_args(argv)
    if not args.input:
        parser.print_help()
        raise SystemExit(1)
    return args


def parse_wei(value: str, line_no: int) -> int:
    s = value.strip()
    if not WEI_RE.match(s):
        raise RewardsFileError(f"row {line_no}: reward amount {value!r} is not a base-10 wei integer")
    return int(s)


def cell(value) -> str:
    return "" if pd.isna(value) else str(value).strip()


def read_csv(file_path: pathlib.Path) -> RewardsData:
    # header=None: the header line fixes the width, so any wider row is a ParserError
    try:
        df = pd.read_csv(file_path, header=None, dtype=str, keep_default_na=False, skip_blank_lines=True,
                         encoding="utf-8-sig")
    except (pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise RewardsFileError(f"{file_path}: expected 4 fields per row ({CSV_HEADER}): {e}") from e
    if len(df.columns) != 4:
        raise RewardsFileError(f"{file_path}: expected 4 fields ({CSV_HEADER}), got {len(df.columns)}")

    rewards: List[ChecksummedReward] = []
    for row_no, row in enumerate(df.iloc[1:].itertuples(index=False, name=None), start=1):
        address, score, reward_wei, reward_readable = (cell(v) for v in row)
        if not reward_wei:
            raise RewardsFileError(f"row {row_no}: expected 4 fields ({CSV_HEADER}), RewardWei is missing")
        rewards.append(ChecksummedReward(
            address=to_checksum_address(address),
            score=score,
            amount=parse_wei(reward_wei, row_no),
            amount_readable=reward_readable or "0",
        ))
    return RewardsData(generated_at=utc_timestamp(), total_recipients=len(rewards), rewards=rewards)


def read_manifest(file_path: pathlib.Path) -> RewardsData:
    """Read a JSON manifest ({generatedAt, totalRecipients, rewards}) written by process-rewards --json."""
    try:
        manifest = json.loads(pathlib.Path(file_path).read_text(encoding="utf-8"))
        entries = manifest["rewards"]
    except (json.JSONDecodeError, KeyError, TypeError) as e:
        raise RewardsFileError(f"{file_path}: not a rewards manifest: {e}") from e

    rewards: List[ChecksummedReward] = []
    for i, entry in enumerate(entries, start=1):
        try:
            address, amount = entry["address"], str(entry["amount"])
        except (KeyError, TypeError) as e:
            raise RewardsFileError(f"reward {i}: missing field {e}") from e
        rewards.append(ChecksummedReward(
            address=to_checksum_address(address),
            score="",
            amount=parse_wei(amount, i),
            amount_readable=str(entry.get("amountReadable") or "0"),
        ))
    return RewardsData(generated_at=utc_timestamp(), total_recipients=len(rewards), rewards=rewards)


def read_rewards(file_path: pathlib.Path) -> RewardsData:
    if pathlib.Path(file_path).suffix.lower() == ".json":
        return read_manifest(file_path)
    return read_csv(file_path)


def chunk_rewards(rewards: List[ChecksummedReward], size: int = CHUNK_SIZE) -> List[List[ChecksummedReward]]:
    return [rewards[i:i + size] for i in range(0, len(rewards), size)]


def generate_foundry_script(data: RewardsData, contract_address: str) -> str:
    contract = to_checksum_address(contract_address)
    chunks = chunk_rewards(data.rewards)
    total = format_token_amount(data.total_wei)

    parts = [f"""// SPDX-License-Identifier: UNLICENSED
pragma solidity ^0.8.13;

import {{Script, console}} from "forge-std/Script.sol";
import {{SeasonReward}} from "../src/SeasonReward.sol";

/**
 * @title SetSeasonRewardsScript
 * @notice Generated script to set rewards on SeasonReward contract
 * @dev Generated at: {data.generated_at}
 *      Total recipients: {data.total_recipients}
 *      Total amount: {total} native tokens
 */
contract SetSeasonRewardsScript is Script {{
    SeasonReward public seasonReward;

    function setUp() public {{
        seasonReward = SeasonReward(payable({contract}));
    }}

    function run() public {{
        uint256 deployerPrivateKey = vm.envUint("PRIVATE_KEY");
        vm.startBroadcast(deployerPrivateKey);

        console.log("Setting rewards on SeasonReward at:", address(seasonReward));
        console.log("Total recipients:", uint256({data.total_recipients}));
"""]

    for index, chunk in enumerate(chunks, start=1):
        parts.append(f"""
        // Batch {index} of {len(chunks)}
        {{
            address[] memory users = new address[]({len(chunk)});
            uint256[] memory amounts = new uint256[]({len(chunk)});
""")
        parts.extend(f"            users[{i}] = {r.address};\n" for i, r in enumerate(chunk))
        parts.extend(f"            amounts[{i}] = {r.amount};\n" for i, r in enumerate(chunk))
        parts.append(f"""
            seasonReward.setSeasonRewards(users, amounts);
            console.log("Batch {index} complete:", uint256({len(chunk)}), "recipients");
        }}
""")

    parts.append(f"""
        console.log("\\n=== Rewards Set Successfully ===");
        console.log("Total recipients:", uint256({data.total_recipients}));
        console.log("Remember to fund the contract with at least {total} native tokens");

        vm.stopBroadcast();
    }}
}}
""")
    return "".join(parts)


def generate_cast_commands(data: RewardsData, contract_address: str) -> str:
    contract = to_checksum_address(contract_address)
    chunks = chunk_rewards(data.rewards)

    parts = [f"""#!/bin/bash
# Generated Cast commands to set rewards
# Generated at: {data.generated_at}
# Total recipients: {data.total_recipients}
# Contract: {contract}

set -e

CONTRACT="{contract}"

"""]

    for index, chunk in enumerate(chunks, start=1):
        addresses = "[" + ",".join(r.address for r in chunk) + "]"
        amounts = "[" + ",".join(str(r.amount) for r in chunk) + "]"
        parts.append(f"""
# Batch {index} of {len(chunks)} ({len(chunk)} recipients)
echo "Processing batch {index}..."
cast send $CONTRACT "setSeasonRewards(address[],uint256[])" '{addresses}' '{amounts}' --private-key $PRIVATE_KEY --rpc-url $RPC_URL

""")

    parts.append(f"""
echo "\\n=== All batches complete ==="
echo "Total recipients: {data.total_recipients}"
""")
    return "".join(parts)


def generate_raw_lists(data: RewardsData) -> Tuple[str, str]:
    """Index-aligned address and wei amount lists, unbatched."""
    addresses = "\n".join(r.address for r in data.rewards)
    amounts = "\n".join(str(r.amount) for r in data.rewards)
    return addresses, amounts


def raw_output_paths(output: Optional[str]) -> Tuple[pathlib.Path, pathlib.Path]:
    if not output:
        return pathlib.Path("addresses.txt"), pathlib.Path("amounts.txt")
    return pathlib.Path(output + "_addresses.txt"), pathlib.Path(output + "_amounts.txt")


def resolve_output_path(output: str, fmt: str) -> pathlib.Path:
    path = pathlib.Path(output)
    if "." in path.name:
        return path
    return path.with_name(path.name + (".sh" if fmt == "cast" else ".s.sol"))


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    log_level = args.log_level

    try:
        contract = to_checksum_address(args.contract)
        log("info", f"\nReading rewards: {args.input}", log_level)
        data = read_rewards(pathlib.Path(args.input))
        log("info", f"   ✓ Found {data.total_recipients} recipients (all addresses checksum validated)", log_level)
        log("info", f"   Generated at: {data.generated_at}", log_level)
        total = format_token_amount(data.total_wei)
        log("info", f"   Total rewards: {total} native tokens", log_level)

        if args.format == "raw":
            addresses, amounts = generate_raw_lists(data)
            addresses_path, amounts_path = raw_output_paths(args.output)
            write_texts_atomic({addresses_path: addresses, amounts_path: amounts})
            log("info", f"\n✓ Raw files written: {addresses_path}, {amounts_path}", log_level)
            return

        if args.format == "cast":
            output = generate_cast_commands(data, contract)
        else:
            output = generate_foundry_script(data, contract)

        if args.output:
            output_path = resolve_output_path(args.output, args.format)
            write_text_atomic(output_path, output)
            log("info", f"\n✓ Output written to: {output_path}", log_level)
        else:
            log("info", "\n--- Generated Output ---\n", log_level)
            print(output)
    except (ValueError, OSError) as e:
        fail(str(e))

    log("info", "\nNext steps:", log_level)
    log("info", f"   1. Fund the contract with at least {total} native tokens", log_level)
    log("info", "   2. Run the generated script/commands", log_level)
    log("info", "   3. Verify rewards are set correctly", log_level)


if __name__ == "__main__":
    main()
