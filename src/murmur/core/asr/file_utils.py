import os
import shutil
from pathlib import Path
from typing import Optional, Sequence

WHISPER_ENCODERS = ("-encoder.int8.onnx", "-encoder.onnx")
WHISPER_DECODERS = ("-decoder.int8.onnx", "-decoder.onnx")
WHISPER_TOKENS = ("-tokens.txt", "tokens.txt")

TRANSDUCER_ENCODERS = ["encoder.int8.onnx", "encoder.onnx", "encoder.fp16.onnx"]
TRANSDUCER_DECODERS = ["decoder.int8.onnx", "decoder.onnx", "decoder.fp16.onnx"]
TRANSDUCER_JOINERS = ["joiner.int8.onnx", "joiner.onnx", "joiner.fp16.onnx"]

PARTIAL_SUFFIX = ".partial"
EXTRACTING_SUFFIX = ".extracting"


def find_file_by_suffix(directory: Path, *suffixes: str) -> Optional[Path]:
    """First file whose name ends with a suffix, in suffix priority order."""
    try:
        names = sorted(os.listdir(directory))
    except OSError:
        return None
    for suffix in suffixes:
        for name in names:
            if name.endswith(suffix):
                return Path(directory) / name
    return None


def find_file_exact(directory: Path, candidates: Sequence[str]) -> Optional[Path]:
    for name in candidates:
        path = Path(directory) / name
        if path.exists():
            return path
    return None


def is_valid_whisper_model(model_path: Path) -> bool:
    return all(
        find_file_by_suffix(model_path, *suffixes) is not None
        for suffixes in (WHISPER_ENCODERS, WHISPER_DECODERS, WHISPER_TOKENS)
    )


def is_valid_transducer_model(model_path: Path) -> bool:
    return all(
        find_file_exact(model_path, names) is not None
        for names in (TRANSDUCER_ENCODERS, TRANSDUCER_DECODERS, TRANSDUCER_JOINERS, ["tokens.txt"])
    )


def is_valid_model_dir(model_path: Path, model_type: str) -> bool:
    if not Path(model_path).is_dir():
        return False
    if model_type == "whisper":
        return is_valid_whisper_model(model_path)
    return is_valid_transducer_model(model_path)


def remove_path(path: Path) -> None:
    """Delete a file or directory tree if it exists."""
    path = Path(path)
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif path.exists() or path.is_symlink():
        path.unlink()
