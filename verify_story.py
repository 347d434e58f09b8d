import sys
import logging
from pathlib import Path

# Add project root to path
sys.path.append(str(Path(__file__).parent))

from chatcore.resources.catalog import StoryCatalog
from chatflow.dialog.compiler import Compiler
from chatflow.session import SessionConfig, configure_logging


def verify(stories_path: Path, compiler: Compiler) -> bool:
    logger = logging.getLogger("StoryVerification")

    catalog = StoryCatalog(stories_path)
    manifests = len(list(stories_path.glob("*/story.json")))
    loaded = catalog.load_all()
    ok = loaded == manifests

    for story_id, story in sorted(catalog.stories.items()):
        awarded: set[str] = set()
        for index in range(story.chapter_count):
            text = story.read_chapter(index)
            if text is None:
                ok = False
                continue

            script, diagnostics = compiler.compile(text, source_name=story.chapter_name(index))
            awarded.update(script.unlockables)
            for diagnostic in diagnostics:
                print(f"{story_id}/{story.chapter_name(index)}: {diagnostic.severity.name} "
                      f"{diagnostic.code.name} {diagnostic}")
            if any(d.is_error for d in diagnostics):
                ok = False

        for key in story.unlockables:
            if key not in awarded:
                logger.warning(f"{story_id}: unlockable '{key}' is never awarded by any chapter")

    return ok


def main():
    # Usage: verify_story.py [stories_dir] [--strict] [--config=session.json]
    options = {}
    for arg in sys.argv[1:]:
        if arg.startswith("--"):
            key, _, value = arg[2:].partition("=")
            options[key] = value
    args = [a for a in sys.argv[1:] if not a.startswith("--")]

    config = SessionConfig.from_file(options["config"]) if options.get("config") else SessionConfig()
    configure_logging(config.log_level)
    logger = logging.getLogger("StoryVerification")

    stories_path = Path(args[0]) if args else config.stories_path
    strict = "strict" in options
    compiler = Compiler(allow_routing_nodes=config.allow_routing_nodes and not strict)

    if not stories_path.exists():
        logger.error(f"VERIFICATION FAILED: {stories_path} not found")
        sys.exit(1)

    if verify(stories_path, compiler):
        logger.info("VERIFICATION SUCCESSFUL: All stories compiled.")
    else:
        logger.error("VERIFICATION FAILED: see diagnostics above")
        sys.exit(1)


if __name__ == "__main__":
    main()
