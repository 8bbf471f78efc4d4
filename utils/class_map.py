"""Class label records and the class map file they are persisted in."""
import json
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Sequence, Union

from utils.errors import PreconditionError, ResourceUnavailableError
from utils.logging import get_logger

logger = get_logger("class_map")

CLASS_MAP_FILENAME = "class_map.json"


@dataclass(frozen=True)
class BirdClass:
    """One output class of the model; ``class_index`` is its position in the logits."""
    id: str
    name: str
    scientific_name: str
    class_index: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def parse_label(label: str, class_index: int) -> BirdClass:
    """
    Build a record from a bare label.

    ``"Turdus merula_Eurasian Blackbird"`` (scientific and common name joined by
    an underscore) is split into both names; any other string is used as id and
    name.
    """
    if "_" in label:
        scientific, _, common = label.partition("_")
        return BirdClass(
            id=label,
            name=common.replace("_", " ") or "Unknown",
            scientific_name=scientific or "Unknown",
            class_index=class_index,
        )
    return BirdClass(id=label, name=label, scientific_name="", class_index=class_index)


def create_class_mapping(birds: Sequence[Dict[str, str]]) -> List[BirdClass]:
    """Assign dense class indices (0..N-1) in input order.

    Each entry needs ``id``; ``name`` and ``scientific_name`` (or
    ``scientificName``) default to the id / empty string.
    """
    classes = [
        BirdClass(
            id=str(b["id"]),
            name=str(b.get("name", b["id"])),
            scientific_name=str(b.get("scientific_name", b.get("scientificName", ""))),
            class_index=i,
        )
        for i, b in enumerate(birds)
    ]
    return validate_classes(classes)


def validate_classes(classes: Sequence[BirdClass]) -> List[BirdClass]:
    """Check that class indices are unique and dense, and return them sorted by index."""
    if not classes:
        raise PreconditionError("Class list is empty")
    ordered = sorted(classes, key=lambda c: c.class_index)
    indices = [c.class_index for c in ordered]
    if indices != list(range(len(ordered))):
        raise PreconditionError(f"Class indices must be unique and dense 0..{len(ordered) - 1}, got {indices}")
    return ordered


def _records_to_classes(records: List[Any]) -> List[BirdClass]:
    classes = []
    for i, rec in enumerate(records):
        if isinstance(rec, str):
            classes.append(parse_label(rec, i))
        elif isinstance(rec, dict) and "id" in rec:
            classes.append(BirdClass(
                id=str(rec["id"]),
                name=str(rec.get("name", rec["id"])),
                scientific_name=str(rec.get("scientific_name", rec.get("scientificName", ""))),
                class_index=int(rec.get("class_index", rec.get("classIndex", i))),
            ))
        else:
            raise ValueError(f"Unsupported class record at position {i}: {rec!r}")
    return validate_classes(classes)


def load_class_map(artifacts_dir: Union[str, Path]) -> List[BirdClass]:
    """
    Load the class list in index order from ``artifacts_dir/class_map.json``.

    Accepted layouts:
    1. ``{"classes": [{"id", "name", "scientific_name", "class_index"}, ...]}``
    2. ``{"idx2name": [...]}`` or ``{"idx2name": {"0": ..., "1": ...}}``
    3. a bare JSON list of labels (e.g. ``"Scientific_Common"`` strings)

    Raises:
        ResourceUnavailableError: if the file is missing or unreadable.
    """
    cm_path = Path(artifacts_dir) / CLASS_MAP_FILENAME
    if not cm_path.exists():
        raise ResourceUnavailableError(f"Class map not found: {cm_path}")
    try:
        with open(cm_path, "r") as f:
            data = json.load(f)
        if isinstance(data, list):
            classes = _records_to_classes(data)
        elif isinstance(data.get("classes"), list):
            classes = _records_to_classes(data["classes"])
        elif isinstance(data.get("idx2name"), list):
            classes = _records_to_classes(data["idx2name"])
        elif isinstance(data.get("idx2name"), dict):
            # Convert dict to list, sorted by key
            names = [v for k, v in sorted(data["idx2name"].items(), key=lambda kv: int(kv[0]))]
            classes = _records_to_classes(names)
        else:
            raise ValueError("no 'classes' or 'idx2name' entry")
    except (OSError, ValueError, AttributeError, KeyError, TypeError) as e:
        raise ResourceUnavailableError(f"Invalid class map {cm_path}: {e}") from e
    logger.debug(f"Loaded class map from {cm_path} ({len(classes)} classes)")
    return classes


def save_class_map(artifacts_dir: Union[str, Path], classes: Sequence[BirdClass]) -> Path:
    """
    Save the class list to ``artifacts_dir/class_map.json``.

    Example:
        >>> from utils.class_map import create_class_mapping, save_class_map
        >>> save_class_map("artifacts", create_class_mapping([{"id": "blackbird"}]))
    """
    classes = validate_classes(list(classes))
    artifacts_dir = Path(artifacts_dir)
    artifacts_dir.mkdir(parents=True, exist_ok=True)
    cm_path = artifacts_dir / CLASS_MAP_FILENAME

    data = {
        "idx2name": [c.id for c in classes],
        "classes": [c.to_dict() for c in classes],
        "num_classes": len(classes),
    }

    with open(cm_path, "w") as f:
        json.dump(data, f, indent=2)

    logger.info(f"Saved class map to {cm_path} ({len(classes)} classes)")
    return cm_path


def search_labels(classes: Sequence[BirdClass], query: str, limit: int = 20) -> List[BirdClass]:
    """Case-insensitive substring match on id, name and scientific name."""
    q = query.lower()
    hits = [
        c for c in classes
        if q in c.id.lower() or q in c.name.lower() or q in c.scientific_name.lower()
    ]
    return hits[:limit]
