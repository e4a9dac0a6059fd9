"""
Command-line entry point.

    visual-matcher reconcile [--image-dir DIR] [--store PATH]
    visual-matcher search IMAGE [--store PATH]
    visual-matcher cleanup [--upload-dir DIR] [--store PATH]

Each command prints its result as JSON.
"""

import os
import sys
import json
import logging
import argparse

from .catalog import CATALOG_STORE_PATH, CatalogStore
from .cleanup import CLEANUP_MAX_AGE_SECONDS, UPLOAD_DIR, cleanup_uploads
from .embedding import get_default_provider
from .engine import IMAGE_BASE_URL, SearchEngine
from .errors import VisualMatcherError
from .reconcile import CATALOG_IMAGE_DIR, CATALOG_REF_PREFIX, Reconciler

logger = logging.getLogger(__name__)

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def default_log_level() -> str:
    """LOG_LEVEL from the environment, or INFO when unset or unknown."""
    level = os.environ.get("LOG_LEVEL", "INFO").upper()
    return level if level in LOG_LEVELS else "INFO"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="visual-matcher",
        description="Keep product embeddings in sync and search them by image",
    )
    parser.add_argument("--store", default=CATALOG_STORE_PATH,
                        help="Catalog JSON file")
    parser.add_argument("--log-level", type=str.upper,
                        choices=LOG_LEVELS, default=default_log_level())
    sub = parser.add_subparsers(dest="command", required=True)

    reconcile = sub.add_parser("reconcile", help="Sync embeddings with the image folder")
    reconcile.add_argument("--image-dir", default=CATALOG_IMAGE_DIR)
    reconcile.add_argument("--ref-prefix", default=CATALOG_REF_PREFIX,
                           help="Prefix stored in each entry's image ref")

    search = sub.add_parser("search", help="Rank catalog products against an image")
    search.add_argument("image", help="Query image path")
    search.add_argument("--base-url", default=IMAGE_BASE_URL,
                        help="Prefix for result image references")
    search.add_argument("--min-similarity", type=float, default=None,
                        help="Only print results at or above this score")

    cleanup = sub.add_parser("cleanup", help="Delete stale query uploads")
    cleanup.add_argument("--upload-dir", default=UPLOAD_DIR)
    cleanup.add_argument("--max-age", type=float, default=CLEANUP_MAX_AGE_SECONDS,
                         help="Seconds before an upload may be deleted")

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=args.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        store = CatalogStore(args.store)

        if args.command == "reconcile":
            reconciler = Reconciler(store, get_default_provider(),
                                    image_dir=args.image_dir,
                                    ref_prefix=args.ref_prefix)
            report = reconciler.run()
            output = report.to_dict()
            code = 0 if report.success else 1

        elif args.command == "search":
            engine = SearchEngine(store, get_default_provider(),
                                  image_base_url=args.base_url)
            response = engine.search_image(args.image)
            output = response.to_dict()
            if args.min_similarity is not None:
                output["results"] = [
                    r for r in output["results"]
                    if r["similarity"] >= args.min_similarity
                ]
            code = 0

        else:
            report = cleanup_uploads(args.upload_dir, store, args.max_age)
            output = report.to_dict()
            code = 0

    except VisualMatcherError as e:
        logger.error(str(e))
        output = {"success": False, "error": str(e)}
        code = 1

    json.dump(output, sys.stdout, indent=2)
    sys.stdout.write("\n")
    return code


if __name__ == "__main__":
    sys.exit(main())
