"""
Command line entry point for ScribeLoop.

Run with: python -m scribeloop <command>
"""

import argparse
import contextlib
import getpass
import json
import sys
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from . import __version__
from .config import Config, SUPPORTED_LLM_PROVIDERS
from .errors import ScribeLoopError, ModelNotLoaded
from .metrics import MetricsWriter
from .types import DocumentType


def _document_type(value: str) -> DocumentType:
    try:
        return DocumentType(value.lower())
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"unknown document type '{value}' (choose from {', '.join(t.value for t in DocumentType)})"
        ) from None


# Wiring

def load_model(config: Config):
    """Trained classifier if one was saved, otherwise the built-in seed model."""
    from .classify import NaiveBayesModel

    if config.classifier_model.exists():
        try:
            return NaiveBayesModel.load(config.classifier_model)
        except ModelNotLoaded as e:
            print(f"[Classifier] {e}; using built-in model")
    return NaiveBayesModel.seeded()


def build_classifier(config: Config, store=None, metrics=None):
    from .classify import Classifier, ClassificationLogger

    logger = ClassificationLogger(store) if store is not None else None
    return Classifier(load_model(config), logger=logger, metrics=metrics)


def build_store(config: Config, metrics=None):
    from .learning import LearningStore

    return LearningStore(config.learning_db, metrics=metrics)


def build_orchestrator(config: Config, store=None, metrics=None):
    from .enhance import EnhancementOrchestrator
    from .secrets import EnvFileSecretStore

    return EnhancementOrchestrator(
        config.snapshot(),
        secrets=EnvFileSecretStore(config.env_file),
        learning=store,
        metrics=metrics,
    )


@contextlib.contextmanager
def services(config: Config, need_store: bool = True):
    """Metrics writer and learning store, shut down on exit."""
    metrics = MetricsWriter(config.metrics_file)
    store = build_store(config, metrics) if need_store else None
    try:
        yield metrics, store
    finally:
        if store is not None:
            store.close()
        metrics.shutdown()


def _print_result(result, verbose: bool) -> None:
    if verbose:
        decision = result.enhanced.decision
        route = "cloud" if decision.used_cloud else "local"
        print(f"[{result.document_type.value}] via {route}; rules: {', '.join(result.enhanced.applied_rules) or 'none'}")
    print(result.text)


# Commands

def cmd_devices(args, config: Config) -> int:
    from .audio import list_input_devices

    for device in list_input_devices():
        marker = "*" if device["is_default"] else " "
        print(f"{marker} [{device['index']}] {device['name']} ({device['sample_rate']} Hz)")
    return 0


def _build_pipeline(config: Config, metrics, store, capture=None):
    from .bridge import LearningFeed
    from .pipeline import DictationPipeline
    from .transcription import TranscriptionEngine

    snapshot = config.snapshot()
    engine = TranscriptionEngine(snapshot.model_path, compute_type=snapshot.compute_type)
    classifier = build_classifier(config, store, metrics)
    feed = LearningFeed(store, classifier, metrics) if snapshot.learning_enabled else None
    pipeline = DictationPipeline(
        snapshot,
        capture,
        engine,
        classifier,
        build_orchestrator(config, store, metrics),
        metrics=metrics,
        learning_feed=feed,
    )
    return pipeline, engine, feed, classifier


def _teardown(pipeline, engine, feed, classifier) -> None:
    pipeline.orchestrator.close()
    if feed is not None:
        feed.shutdown()
    if classifier.logger is not None:
        classifier.logger.shutdown()
    engine.close()


def cmd_record(args, config: Config) -> int:
    from .audio import AudioCapture

    with services(config) as (metrics, store):
        snapshot = config.snapshot()
        capture = AudioCapture(level_gain=snapshot.level_gain, level_hz=snapshot.level_hz, metrics=metrics)
        pipeline, engine, feed, classifier = _build_pipeline(config, metrics, store, capture)
        try:
            capture.prewarm(args.device or snapshot.input_device)
            input("Press Enter to start recording...")
            pipeline.start(args.device)
            input("Recording. Press Enter to stop...")
            result = pipeline.stop()
            _print_result(result, args.verbose)

            if args.edit and result.text:
                edited = input("Edit (empty to keep): ").strip()
                if edited and pipeline.record_edit(result, edited):
                    print("[Learning] Correction queued")
        finally:
            capture.close()
            _teardown(pipeline, engine, feed, classifier)
    return 0


def cmd_transcribe_file(args, config: Config) -> int:
    from .audio_processing import read_audio_file

    pcm = read_audio_file(args.path)
    with services(config) as (metrics, store):
        pipeline, engine, feed, classifier = _build_pipeline(config, metrics, store)
        try:
            result = pipeline.process_audio(pcm, document_type=args.type)
            if args.raw:
                print(result.transcription.text)
            else:
                _print_result(result, args.verbose)
        finally:
            _teardown(pipeline, engine, feed, classifier)
    return 0


def cmd_classify(args, config: Config) -> int:
    from .features import extract_features

    classifier = build_classifier(config)
    document_type = classifier.classify(args.text)
    print(document_type.value)
    if args.verbose:
        print(extract_features(args.text).to_json())
    return 0


def cmd_enhance(args, config: Config) -> int:
    from .pipeline import DictationPipeline

    with services(config) as (metrics, store):
        classifier = build_classifier(config, store, metrics)
        orchestrator = build_orchestrator(config, store, metrics)
        pipeline = DictationPipeline(config.snapshot(), None, None, classifier, orchestrator, metrics=metrics)
        try:
            _print_result(pipeline.process_text(args.text, args.type), args.verbose)
        finally:
            orchestrator.close()
            if classifier.logger is not None:
                classifier.logger.shutdown()
    return 0


def cmd_learn(args, config: Config) -> int:
    with services(config) as (metrics, store):
        document_type = args.type or build_classifier(config).classify(args.original)
        pattern = store.record(document_type, args.original, args.edited)
        print(f"{pattern.document_type.value} pattern #{pattern.id}: "
              f"frequency {pattern.frequency}, confidence {pattern.confidence:.2f}")
    return 0


def cmd_sweep(args, config: Config) -> int:
    days = args.days if args.days is not None else config.retention_days
    with services(config) as (metrics, store):
        deleted = store.sweep(days)
    print(f"Removed {deleted} stale pattern(s) older than {days} days")
    return 0


def cmd_stats(args, config: Config) -> int:
    with services(config) as (metrics, store):
        stats = store.statistics()
    print(json.dumps(stats, indent=2))
    return 0


def cmd_clear(args, config: Config) -> int:
    if not args.yes:
        print("Refusing to clear learned patterns without --yes")
        return 1
    with services(config) as (metrics, store):
        store.clear()
    print("Cleared all learned patterns")
    return 0


def read_training_samples(path: Path) -> List[Tuple[str, str]]:
    """JSONL lines of {"text": ..., "label": ...}."""
    samples = []
    with open(path) as f:
        for number, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                item = json.loads(line)
                samples.append((str(item["text"]), DocumentType.from_label(str(item["label"])).value))
            except (json.JSONDecodeError, KeyError, TypeError) as e:
                raise ScribeLoopError(f"{path}:{number}: invalid training sample ({e})") from e
    return samples


def cmd_train_classifier(args, config: Config) -> int:
    from .classify import NaiveBayesModel, SEED_SAMPLES

    samples: Iterable[Tuple[str, str]] = read_training_samples(Path(args.path))
    if not args.no_seed:
        samples = list(SEED_SAMPLES) + list(samples)
    model = NaiveBayesModel.fit(samples)
    output = Path(args.output) if args.output else config.classifier_model
    model.save(output)
    print(f"Trained on {int(model.class_counts.sum())} samples ({', '.join(model.labels)}) -> {output}")
    return 0


def cmd_set_key(args, config: Config) -> int:
    from .secrets import EnvFileSecretStore, api_key_name

    store = EnvFileSecretStore(config.env_file)
    name = api_key_name(args.provider)
    if args.delete:
        store.delete(name)
        print(f"Removed {args.provider} API key")
        return 0

    key = args.key or getpass.getpass(f"{args.provider} API key: ")
    if not key.strip():
        print("No key given")
        return 1
    store.save(name, key.strip().encode("utf-8"))
    print(f"Saved {args.provider} API key to {config.env_file}")
    return 0


def cmd_bridge(args, config: Config) -> int:
    from .bridge import LearningFeed, NativeMessagingHost

    # stdout is the native-messaging channel; route every print to stderr
    with contextlib.redirect_stdout(sys.stderr):
        with services(config) as (metrics, store):
            classifier = build_classifier(config, store, metrics)
            feed = LearningFeed(store, classifier, metrics)
            host = NativeMessagingHost(sys.stdin.buffer, on_edit=feed.submit)
            try:
                host.serve_forever()
            finally:
                feed.shutdown()
                if classifier.logger is not None:
                    classifier.logger.shutdown()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="scribeloop",
        description="ScribeLoop - dictation with a learning feedback loop",
    )
    parser.add_argument("--version", action="version", version=f"ScribeLoop v{__version__}")
    parser.add_argument(
        "--data-dir",
        type=Path,
        help="Settings/database directory (default: $SCRIBELOOP_HOME or ~/.scribeloop)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Show classification and routing details")

    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("devices", help="List input devices").set_defaults(func=cmd_devices)

    p = commands.add_parser("record", help="Record from the microphone, then transcribe and enhance")
    p.add_argument("--device", help="Input device index or name")
    p.add_argument("--edit", action="store_true", help="Prompt for a correction and learn from it")
    p.set_defaults(func=cmd_record)

    p = commands.add_parser("transcribe-file", help="Transcribe and enhance an audio file")
    p.add_argument("path", help="Any file libsndfile can read (wav, flac, ogg, ...)")
    p.add_argument("--type", type=_document_type, help="Skip classification and use this document type")
    p.add_argument("--raw", action="store_true", help="Print the transcription without enhancement")
    p.set_defaults(func=cmd_transcribe_file)

    p = commands.add_parser("classify", help="Classify text into a document type")
    p.add_argument("text")
    p.set_defaults(func=cmd_classify)

    p = commands.add_parser("enhance", help="Enhance text as if it had been dictated")
    p.add_argument("text")
    p.add_argument("--type", type=_document_type, help="Document type (classified when omitted)")
    p.set_defaults(func=cmd_enhance)

    p = commands.add_parser("learn", help="Record a correction: original text -> edited text")
    p.add_argument("original")
    p.add_argument("edited")
    p.add_argument("--type", type=_document_type, help="Document type (classified when omitted)")
    p.set_defaults(func=cmd_learn)

    p = commands.add_parser("sweep", help="Remove stale, rarely-seen patterns")
    p.add_argument("--days", type=int, help="Age threshold (default: retention_days setting)")
    p.set_defaults(func=cmd_sweep)

    commands.add_parser("stats", help="Show learning statistics").set_defaults(func=cmd_stats)

    p = commands.add_parser("clear-learning", help="Delete every learned pattern")
    p.add_argument("--yes", action="store_true")
    p.set_defaults(func=cmd_clear)

    p = commands.add_parser("train-classifier", help="Train the document classifier from JSONL samples")
    p.add_argument("path", help='JSONL file of {"text": ..., "label": ...}')
    p.add_argument("--output", help="Model path (default: classifier.json in the data dir)")
    p.add_argument("--no-seed", action="store_true", help="Do not include the built-in samples")
    p.set_defaults(func=cmd_train_classifier)

    p = commands.add_parser("set-key", help="Store an LLM provider API key")
    p.add_argument("provider", choices=SUPPORTED_LLM_PROVIDERS)
    p.add_argument("key", nargs="?", help="API key (prompted when omitted)")
    p.add_argument("--delete", action="store_true", help="Remove the stored key")
    p.set_defaults(func=cmd_set_key)

    commands.add_parser("bridge", help="Run as the browser extension's native messaging host").set_defaults(func=cmd_bridge)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = Config.load(args.data_dir)
        return args.func(args, config)
    except KeyboardInterrupt:
        print("\nCancelled")
        return 130
    except ScribeLoopError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
