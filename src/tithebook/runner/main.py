"""
CLI main entry point.
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from ..amounts import AmountValidator
from ..amounts.ensemble import EnsembleCorrector
from ..config import Config, ConfigValidationError, create_default_config, load_config
from ..learning import (
    AmountRegressionModel,
    CorrectionStore,
    NameAliasLearner,
    ScopeLocks,
    SubstitutionLearner,
)
from ..matching import NameMatcher
from ..schemas.extraction import PageExtraction
from ..schemas.member_record import MemberRecord, read_roster
from ..semantic import SemanticMatcher
from ..sequencing import consolidate_batch, extract_batch
from ..services import ReconciliationService
from ..state_store import StateStore, StorageUnavailableError
from ..vision import VisionClient

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def create_cli() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="tithebook",
        description="Read tithe register photos, learn amount corrections and reconcile rosters",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # init-config command
    init_parser = subparsers.add_parser("init-config", help="Write a default config file")
    init_parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite an existing config file",
    )

    # extract command
    extract_parser = subparsers.add_parser(
        "extract", help="Extract, sequence and check tithe register photos"
    )
    extract_parser.add_argument("images", type=Path, nargs="+", help="Page photos")
    extract_parser.add_argument("--assembly", required=True, help="Assembly name")
    extract_parser.add_argument("--month", help="Month column to read (e.g. June)")
    extract_parser.add_argument("--week", help="Week column to read (e.g. 'Week 2')")
    extract_parser.add_argument("--output", type=Path, help="Write the result as JSON")

    # sequence command
    sequence_parser = subparsers.add_parser(
        "sequence", help="Sequence previously extracted pages (JSON)"
    )
    sequence_parser.add_argument("pages", type=Path, help="JSON list of page extractions")
    sequence_parser.add_argument("--output", type=Path, help="Write the result as JSON")

    # reconcile command
    reconcile_parser = subparsers.add_parser(
        "reconcile", help="Reconcile a roster file with the stored master roster"
    )
    reconcile_parser.add_argument("roster", type=Path, help="Roster file (.csv or .json)")
    reconcile_parser.add_argument("--assembly", required=True, help="Assembly name")
    reconcile_parser.add_argument(
        "--apply",
        action="store_true",
        help="Write new and changed members to the stored roster",
    )
    reconcile_parser.add_argument(
        "--use-new",
        type=int,
        nargs="*",
        default=[],
        metavar="INDEX",
        help="Conflict indices to resolve with the incoming record",
    )
    reconcile_parser.add_argument("--output", type=Path, help="Write the report as JSON")

    # match command
    match_parser = subparsers.add_parser("match", help="Find the roster member for a name")
    match_parser.add_argument("name", help="Name as read from the page")
    match_parser.add_argument("--assembly", required=True, help="Assembly name")
    match_parser.add_argument("--position", type=int, help="Row number on the page")

    # correct command
    correct_parser = subparsers.add_parser("correct", help="Record an amount correction")
    correct_parser.add_argument("original", help="Amount as read (e.g. '1OO')")
    correct_parser.add_argument("value", type=float, help="Correct amount")
    correct_parser.add_argument("--assembly", required=True, help="Assembly name")
    correct_parser.add_argument("--member-id", help="Member the amount belongs to")

    # suggest command
    suggest_parser = subparsers.add_parser("suggest", help="Suggest a correction for an amount")
    suggest_parser.add_argument("original", help="Amount as read")
    suggest_parser.add_argument("--assembly", required=True, help="Assembly name")

    # export/import commands
    export_parser = subparsers.add_parser("export-corrections", help="Export learned corrections")
    export_parser.add_argument("output", type=Path, help="JSON file to write")
    export_parser.add_argument("--assembly", help="Only this assembly")

    import_parser = subparsers.add_parser("import-corrections", help="Import learned corrections")
    import_parser.add_argument("input", type=Path, help="JSON file to read")

    # status command
    subparsers.add_parser("status", help="Show learned-state statistics")

    return parser


def open_store(config: Config) -> StateStore | None:
    """State store, or None when persistence is off or the DB cannot be opened."""
    if not config.persistence_enabled:
        return None
    try:
        return StateStore(config.state_db_path)
    except StorageUnavailableError as e:
        logger.warning("Running stateless: %s", e)
        print(f"⚠️  State store unavailable, nothing will be remembered ({e})")
        return None


def stored_members(store: StateStore | None, assembly: str) -> list[MemberRecord]:
    """Stored roster for an assembly; empty when the store cannot be read."""
    if store is None:
        return []
    try:
        return store.list_members(assembly)
    except StorageUnavailableError as e:
        logger.warning("Cannot read roster for %s: %s", assembly, e)
        return []


def build_learners(
    config: Config, store: StateStore | None
) -> tuple[CorrectionStore, EnsembleCorrector]:
    locks = ScopeLocks()
    corrections = CorrectionStore(store, config.learning, locks=locks)
    substitutions = SubstitutionLearner(store, locks=locks)
    ensemble = EnsembleCorrector(
        substitutions,
        model_factory=lambda scope: AmountRegressionModel(scope, store, config.learning),
    )
    return corrections, ensemble


def _write_json(path: Path, data) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)


def cmd_init_config(config_path: Path, force: bool) -> int:
    """Write a default config file."""
    if config_path.exists() and not force:
        print(f"❌ {config_path} already exists (use --force to overwrite)")
        return 1
    create_default_config(config_path)
    print(f"✓ Wrote default config to {config_path}")
    return 0


def cmd_extract(
    config: Config,
    images: list[Path],
    assembly: str,
    month: str | None,
    week: str | None,
    output: Path | None,
) -> int:
    """Extract a batch of page photos."""
    missing = [p for p in images if not p.is_file()]
    if missing:
        print(f"❌ Not found: {', '.join(str(p) for p in missing)}")
        return 1

    print(f"📷 Extracting {len(images)} page(s) for {assembly}...")
    store = open_store(config)

    with VisionClient.from_config(config.vision) as client:
        batch = extract_batch(
            images,
            lambda path: client.extract_file(path, month=month, week=week),
            max_workers=config.vision.max_workers,
            threshold=config.sequencing.duplicate_name_threshold,
            gap_threshold=config.sequencing.gap_threshold,
        )

    for failure in batch.failures:
        print(f"  ⚠️  {images[failure.index].name}: {failure.message}")

    if batch.consolidation is None or not batch.pages:
        print("❌ No page could be read")
        return 1

    sequence = batch.consolidation.sequence
    corrections, ensemble = build_learners(config, store)
    validator = AmountValidator(corrections=corrections, ensemble=ensemble)
    validator.learn_patterns(assembly, [e.amount for e in sequence.merged])

    matches = [None] * len(sequence.merged)
    members = stored_members(store, assembly)
    if members:
        semantic = SemanticMatcher(store, config.semantic) if config.semantic.enabled else None
        aliases = NameAliasLearner(store, min_occurrences=config.matching.alias_min_occurrences)
        try:
            matches = NameMatcher(members, aliases, semantic, config.matching).match_batch(
                [e.name for e in sequence.merged],
                scope=assembly,
                positions=[e.row_no or None for e in sequence.merged],
            )
        finally:
            if semantic is not None:
                semantic.close()

    rows = []
    print()
    for entry, match in zip(sequence.merged, matches):
        check = validator.validate_with_learning(assembly, entry.raw_amount)
        flag = f"  ⚠️  {check.message}" if check.needs_review else ""
        member = f" → {match.member.display_name} ({match.score:.0%})" if match else ""
        print(f"  {entry.row_no:>4}  {entry.name:<30} {entry.amount:>8g}{member}{flag}")
        rows.append(
            {
                "entry": entry.to_dict(),
                "validation": check.to_dict(),
                "match": match.to_dict() if match else None,
            }
        )

    for discrepancy in batch.consolidation.discrepancies:
        print(f"  🔍 {discrepancy.message}")

    print(
        f"\n✓ {len(sequence.merged)} entries from {len(batch.pages)} page(s), "
        f"{sequence.duplicates_removed} duplicate(s) removed, "
        f"confidence {sequence.confidence:.0%}"
    )
    if sequence.gaps:
        print(f"  ⚠️  Numbering jumps after rows {', '.join(map(str, sequence.gaps))}")

    if output:
        _write_json(output, {"batch": batch.to_dict(), "rows": rows})
        print(f"  💾 Wrote {output}")
    return 0 if not batch.failures else 2


def cmd_sequence(config: Config, pages_path: Path, output: Path | None) -> int:
    """Sequence page extractions from a JSON file."""
    try:
        with open(pages_path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        print(f"❌ Cannot read {pages_path}: {e}")
        return 1

    if isinstance(data, dict):
        data = data.get("pages", [])
    pages = [PageExtraction.from_dict(p) for p in data if isinstance(p, dict)]
    if not pages:
        print("❌ No pages found")
        return 1

    result = consolidate_batch(
        pages,
        threshold=config.sequencing.duplicate_name_threshold,
        gap_threshold=config.sequencing.gap_threshold,
    )
    sequence = result.sequence

    print(f"📑 Page order: {', '.join(str(i) for i in sequence.page_order)}")
    for entry in sequence.merged:
        print(f"  {entry.row_no:>4}  {entry.name:<30} {entry.amount:>8g}")
    for discrepancy in result.discrepancies:
        print(f"  🔍 {discrepancy.message}")
    print(
        f"\n✓ {len(sequence.merged)} entries, {sequence.duplicates_removed} duplicate(s), "
        f"gaps after {sequence.gaps or 'none'}, confidence {sequence.confidence:.0%}"
    )

    if output:
        _write_json(output, result.to_dict())
        print(f"  💾 Wrote {output}")
    return 0


def cmd_reconcile(
    config: Config,
    roster: Path,
    assembly: str,
    apply: bool,
    use_new: list[int],
    output: Path | None,
) -> int:
    """Reconcile a roster file against the stored roster."""
    try:
        incoming = read_roster(roster)
    except (OSError, ValueError) as e:
        print(f"❌ Cannot read roster: {e}")
        return 1

    store = open_store(config)
    if store is None:
        print("❌ Reconciliation needs the state store")
        return 1

    service = ReconciliationService(store)
    report = service.reconcile(assembly, incoming)

    print("\n📊 Roster Reconciliation")
    print("=" * 40)
    print(f"  New members:           {len(report.new_members)}")
    print(f"  Changed members:       {len(report.changed_members)}")
    print(f"  Unchanged:             {report.unchanged_count}")
    print(f"  Conflicts:             {len(report.conflicts)}")
    print(f"  Without ID (incoming): {len(report.unidentifiable_new)}")
    print(f"  Without ID (master):   {len(report.unidentifiable_master)}")

    for idx, conflict in enumerate(report.conflicts):
        print(
            f"  ⚠️  [{idx}] {conflict.incoming.display_name} "
            f"vs existing {conflict.existing.display_name}"
        )

    if output:
        _write_json(output, report.to_dict())
        print(f"  💾 Wrote {output}")

    if apply:
        resolutions = {idx: "use_new" for idx in use_new}
        result = service.apply_report(assembly, report, resolutions, source=roster.name)
        print(
            f"\n✓ Added {result.added}, updated {result.updated}, "
            f"replaced {result.conflicts_replaced} conflict(s)"
        )
    else:
        print("\n✓ Dry run (use --apply to update the stored roster)")
    return 0


def cmd_match(config: Config, name: str, assembly: str, position: int | None) -> int:
    """Match one name against the stored roster."""
    store = open_store(config)
    members = stored_members(store, assembly)
    if not members:
        print(f"❌ No stored roster for {assembly}")
        return 1

    semantic = SemanticMatcher(store, config.semantic) if config.semantic.enabled else None
    aliases = NameAliasLearner(store, min_occurrences=config.matching.alias_min_occurrences)
    matcher = NameMatcher(members, aliases, semantic, config.matching)
    try:
        match = matcher.match(name, scope=assembly, position=position)
    finally:
        if semantic:
            semantic.close()

    if match is None:
        print(f"❌ No member matches '{name}'")
        return 1

    print(f"👤 {match.member.display_name}")
    print(f"   Score: {match.score:.0%} ({match.tier.value}, {match.source.value})")
    for alt in match.alternatives:
        print(f"   or {alt.member.display_name} ({alt.score:.0%})")
    return 0


def cmd_correct(
    config: Config, original: str, value: float, assembly: str, member_id: str | None
) -> int:
    """Record a correction and train the learners on it."""
    store = open_store(config)
    corrections, ensemble = build_learners(config, store)

    if not corrections.save(assembly, original, value, member_id=member_id):
        print("⏭ Nothing recorded (no-op correction or stateless mode)")
        return 0

    promoted = corrections.promote(original, value)
    ensemble.train(assembly, original, value)

    print(f"✓ Learned '{original}' → {value:g} for {assembly}")
    if promoted:
        print("  🌍 Promoted to all assemblies")
    return 0


def cmd_suggest(config: Config, original: str, assembly: str) -> int:
    """Show what the learners suggest for a raw amount."""
    store = open_store(config)
    corrections, ensemble = build_learners(config, store)

    suggestion = corrections.suggest(assembly, original)
    decision = corrections.auto_correct_decision(assembly, original)
    prediction = ensemble.predict(assembly, original)

    if suggestion:
        where = "all assemblies" if suggestion.is_global else assembly
        print(
            f"💡 {suggestion.value:g} ({suggestion.confidence:.0%}, "
            f"seen {suggestion.occurrences}x in {where})"
        )
        print(f"   Auto-correct: {'yes' if decision.auto_correct else 'no, confirm manually'}")
    if prediction:
        print(f"🤖 {prediction.value:g} ({prediction.confidence:.0%}, {prediction.method})")

    check = AmountValidator(corrections=corrections, ensemble=ensemble).validate_with_learning(
        assembly, original
    )
    if check.needs_review:
        print(f"⚠️  {check.message}")
    elif not suggestion and not prediction:
        print("✓ Nothing to suggest")
    return 0


def cmd_export_corrections(config: Config, output: Path, assembly: str | None) -> int:
    store = open_store(config)
    corrections, _ = build_learners(config, store)
    records = corrections.export(assembly)
    _write_json(output, records)
    print(f"✓ Exported {len(records)} correction(s) to {output}")
    return 0


def cmd_import_corrections(config: Config, input_path: Path) -> int:
    try:
        with open(input_path, encoding="utf-8") as f:
            records = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        print(f"❌ Cannot read {input_path}: {e}")
        return 1
    if not isinstance(records, list):
        print("❌ Expected a JSON list of corrections")
        return 1

    store = open_store(config)
    corrections, _ = build_learners(config, store)
    imported = corrections.import_records(records)
    print(f"✓ Imported {imported} of {len(records)} correction(s)")
    return 0


def cmd_status(config: Config) -> int:
    """Show learned-state status."""
    store = open_store(config)
    if store is None:
        print("⚠️  Stateless mode: nothing is stored")
        return 0
    stats = store.get_stats()

    print("\n📊 Tithebook Status")
    print("=" * 40)
    print(f"  Assemblies:             {stats['assemblies']}")
    print(f"  Members:                {stats['members']}")
    print(f"  Amount corrections:     {stats['amount_corrections']}")
    print(f"  Global corrections:     {stats['global_corrections']}")
    print(f"  Name aliases:           {stats['name_aliases']}")
    print(f"  Character patterns:     {stats['char_substitutions']}")
    print(f"  Trained models:         {stats['regression_models']}")
    print(f"  Cached semantic checks: {stats['semantic_cache']}")
    print()

    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_cli()
    parsed = parser.parse_args(args)

    setup_logging(parsed.verbose)

    if not parsed.command:
        parser.print_help()
        return 1

    if parsed.command == "init-config":
        return cmd_init_config(parsed.config, parsed.force)

    # Load config
    try:
        config = load_config(parsed.config)
        errors = config.validate()
        if errors:
            raise ConfigValidationError("; ".join(errors))
    except Exception as e:
        print(f"❌ Failed to load config: {e}")
        return 1

    # Route to command
    if parsed.command == "extract":
        return cmd_extract(
            config, parsed.images, parsed.assembly, parsed.month, parsed.week, parsed.output
        )
    elif parsed.command == "sequence":
        return cmd_sequence(config, parsed.pages, parsed.output)
    elif parsed.command == "reconcile":
        return cmd_reconcile(
            config, parsed.roster, parsed.assembly, parsed.apply, parsed.use_new, parsed.output
        )
    elif parsed.command == "match":
        return cmd_match(config, parsed.name, parsed.assembly, parsed.position)
    elif parsed.command == "correct":
        return cmd_correct(config, parsed.original, parsed.value, parsed.assembly, parsed.member_id)
    elif parsed.command == "suggest":
        return cmd_suggest(config, parsed.original, parsed.assembly)
    elif parsed.command == "export-corrections":
        return cmd_export_corrections(config, parsed.output, parsed.assembly)
    elif parsed.command == "import-corrections":
        return cmd_import_corrections(config, parsed.input)
    elif parsed.command == "status":
        return cmd_status(config)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
