#!/usr/bin/env python3
"""
CLI workflow runner for problem detection and explanation generation.

Provides command-line interface for detecting regions and running batches.
"""
import argparse
import asyncio
import json
import os
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent))

from config.settings import settings
from core.cancellation import CancellationToken
from core.models import BatchState, ExplanationMode
from data.database import get_db_manager, init_database, session_scope
from detection.detector import RegionDetector
from serving.storage_service import ExplanationStorageService
from services.generation_service import ExplanationService
from services.llm import LLMClientFactory
from services.orchestrator import BatchCallbacks, BatchOrchestrator
from services.prompt_service import PromptService, seed_default_prompts
from services.quota_service import UserQuota
from utils.bbox_utils import draw_bounding_boxes
from utils.image_utils import load_pages, to_pil
from utils.logger import setup_logging


def read_files(paths):
    """Read input files as (filename, bytes) tuples, skipping missing ones."""
    files = []
    for path in paths:
        if not os.path.exists(path):
            print(f"❌ Error: File not found: {path}")
            continue
        with open(path, 'rb') as f:
            files.append((os.path.basename(path), f.read()))
    return files


def detect_cli(paths, output_dir: str = None, as_json: bool = False):
    """Detect problem regions and optionally save annotated pages."""
    files = read_files(paths)
    if not files:
        return

    pages = load_pages(files, target_dpi=settings.pdf_render_dpi)
    detector = RegionDetector.from_settings(settings)

    results = []
    for page in pages:
        bboxes = detector.detect(page.image)
        results.append({
            'page_number': page.page_number,
            'source': page.source_name,
            'regions': [bbox.to_dict() for bbox in bboxes]
        })

        if not as_json:
            print(f"Page {page.page_number} ({page.source_name}): {len(bboxes)} regions")
            for i, bbox in enumerate(bboxes, start=1):
                print(
                    f"  {i:>3}. x={bbox.x_min:.3f}-{bbox.x_max:.3f} "
                    f"y={bbox.y_min:.3f}-{bbox.y_max:.3f}"
                )

        if output_dir:
            os.makedirs(output_dir, exist_ok=True)
            annotated = draw_bounding_boxes(to_pil(page.image), bboxes)
            out_path = os.path.join(output_dir, f"page_{page.page_number:03d}.png")
            annotated.save(out_path)
            if not as_json:
                print(f"  ✓ Annotated page saved: {out_path}")

    if as_json:
        print(json.dumps(results, indent=2))


async def run_cli(
    paths,
    mode: str,
    user_id: str,
    title: str = None,
    guidelines: str = ""
):
    """Detect, recognize and explain every problem in the input files."""
    files = read_files(paths)
    if not files:
        return None

    print("=" * 60)
    print(f"Running {mode} batch for {len(files)} file(s)")
    print("=" * 60)

    init_database()
    db_manager = get_db_manager()
    seed_default_prompts(db_manager.session)

    pages = load_pages(files, target_dpi=settings.pdf_render_dpi)
    print(f"Total pages: {len(pages)}")
    if len(pages) > settings.max_pages_warning:
        print(f"⚠️  More than {settings.max_pages_warning} pages; this may take a while.")

    client = LLMClientFactory.from_settings(settings)
    service = ExplanationService(client, PromptService(db_manager.session), settings)
    quota = UserQuota(db_manager.session, user_id)

    callbacks = BatchCallbacks(
        on_regions_detected=lambda page, bboxes: print(f"  Page {page}: {len(bboxes)} regions"),
        on_status=lambda message: print(f"  {message}"),
        on_error=lambda error: print(f"❌ {error}")
    )
    orchestrator = BatchOrchestrator(service, quota, callbacks=callbacks)
    token = CancellationToken()

    try:
        result = await orchestrator.run(pages, ExplanationMode(mode), token, guidelines=guidelines)
    except KeyboardInterrupt:
        token.cancel()
        raise
    finally:
        await client.close()

    print()
    print(f"State: {result.state.value}")
    print(f"Charged: {result.charged}  Completed: {result.completed}  Refunded: {result.refunded}")
    if result.error:
        print(f"❌ {result.error}")
    if result.accounting_error:
        print(f"❌ {result.accounting_error}")

    for record in result.records:
        status = "error" if record.is_error else "ok"
        print(f"\n--- Page {record.page_number}, problem {record.problem_number} [{status}] ---")
        print(record.markdown)

    if title and result.state == BatchState.COMPLETED and result.completed:
        with session_scope() as session:
            explanation_set = ExplanationStorageService(session).save_set(
                user_id, title, result.records
            )
            print(f"\n✓ Saved set: {explanation_set.id}")

    print("=" * 60)
    return result


def usage_cli(user_id: str):
    """Show usage counters for a user."""
    init_database()
    usage = UserQuota(get_db_manager().session, user_id).get_usage()
    print(f"User: {usage['user_id']} (tier: {usage['tier']})")
    print(f"Day: {usage['day']}")
    for mode, counter in usage['explanations'].items():
        limit = counter['limit'] if counter['limit'] is not None else '∞'
        print(f"  {mode:<9} {counter['used']}/{limit}")
    print(f"Month: {usage['month']}")
    for kind, counter in usage['exports'].items():
        limit = counter['limit'] if counter['limit'] is not None else '∞'
        print(f"  {kind:<9} {counter['used']}/{limit}")


def main():
    parser = argparse.ArgumentParser(
        description='Problem detection and explanation CLI workflow'
    )
    parser.add_argument('--log-level', type=str, default=settings.log_level, help='Log level')
    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    # Detect command
    detect_parser = subparsers.add_parser('detect', help='Detect problem regions')
    detect_parser.add_argument('files', nargs='+', help='Image or PDF files')
    detect_parser.add_argument('-o', '--output-dir', type=str, help='Directory for annotated pages')
    detect_parser.add_argument('--json', action='store_true', help='Print regions as JSON')

    # Run command
    run_parser = subparsers.add_parser('run', help='Generate explanations for every problem')
    run_parser.add_argument('files', nargs='+', help='Image or PDF files')
    run_parser.add_argument('--mode', type=str, default='fast', choices=[m.value for m in ExplanationMode], help='Explanation mode')
    run_parser.add_argument('--user', type=str, default='cli', help='User ID charged for the batch')
    run_parser.add_argument('--title', type=str, help='Save completed explanations as a set with this title')
    run_parser.add_argument('--guidelines', type=str, default='', help='Extra writing guidelines')

    # Usage command
    usage_parser = subparsers.add_parser('usage', help='Show usage counters')
    usage_parser.add_argument('--user', type=str, default='cli', help='User ID')

    args = parser.parse_args()
    setup_logging(level=args.log_level, log_dir=settings.log_dir)

    if args.command == 'detect':
        detect_cli(args.files, output_dir=args.output_dir, as_json=args.json)
    elif args.command == 'run':
        asyncio.run(run_cli(
            paths=args.files,
            mode=args.mode,
            user_id=args.user,
            title=args.title,
            guidelines=args.guidelines
        ))
    elif args.command == 'usage':
        usage_cli(args.user)
    else:
        parser.print_help()


if __name__ == '__main__':
    main()
