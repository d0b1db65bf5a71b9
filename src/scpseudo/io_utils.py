from __future__ import annotations

import json
import logging
import os
import re
import urllib.error
import urllib.request
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import anndata as ad
import pandas as pd

LOGGER = logging.getLogger(__name__)


# =====================================================================
# AnnData / metadata
# =====================================================================
def load_dataset(path: Path) -> ad.AnnData:
    """
    Load an annotated dataset (.h5ad file or .zarr store) fully into memory.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Input dataset not found: {path}")

    LOGGER.info("Loading dataset → %s", path)
    if path.suffix == ".zarr" or path.is_dir():
        adata = ad.read_zarr(str(path))
    elif path.suffix == ".h5ad":
        adata = ad.read_h5ad(str(path))
    else:
        raise ValueError(f"Unsupported input format {path.suffix!r} (expected .h5ad or .zarr)")
    LOGGER.info("Loaded %d cells x %d features", adata.n_obs, adata.n_vars)
    return adata


def load_sample_metadata(path: Path) -> pd.DataFrame:
    """
    Per-sample covariates, indexed by sample id (first column).
    TSV unless the file ends in .csv.
    """
    path = Path(path)
    sep = "," if path.suffix.lower() == ".csv" else "\t"
    df = pd.read_csv(path, sep=sep, index_col=0)
    df.index = df.index.astype(str)
    if df.index.has_duplicates:
        dupes = df.index[df.index.duplicated()].unique().tolist()
        raise ValueError(f"{path}: duplicated sample ids {dupes}")
    LOGGER.info("Loaded sample metadata for %d samples (%d columns) from %s", df.shape[0], df.shape[1], path)
    return df


# =====================================================================
# GMT
# =====================================================================
def read_gmt(path: Path) -> Dict[str, List[str]]:
    """name<TAB>description<TAB>gene1<TAB>gene2..."""
    sets: Dict[str, List[str]] = {}
    with open(path, encoding="utf-8") as fh:
        for line in fh:
            parts = line.rstrip("\n\r").split("\t")
            if len(parts) < 3 or not parts[0]:
                continue
            genes = [g for g in parts[2:] if g]
            if parts[0] in sets:
                LOGGER.warning("GMT %s: duplicate gene set %r; keeping the first.", path, parts[0])
                continue
            sets[parts[0]] = genes
    return sets


def write_gmt(gene_sets: Dict[str, List[str]], path: Path, description: str = "NA") -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as fh:
        for name, genes in gene_sets.items():
            fh.write("\t".join([name, description, *genes]) + "\n")
    return path


# =====================================================================
# MSigDB resolution
# =====================================================================
MSIGDB_BASE_URL = "https://data.broadinstitute.org/gsea-msigdb/msigdb/release"
MSIGDB_INDEX_FILENAME = "msigdb_index.json"
MSIGDB_FALLBACK_RELEASE = "2023.1"


def _get_msigdb_cache_dir() -> Path:
    """
    Local cache directory for MSigDB gene sets.

    SCPSEUDO_MSIGDB_DIR if set, otherwise ~/.cache/scpseudo/msigdb.
    """
    override = os.environ.get("SCPSEUDO_MSIGDB_DIR", None)
    if override is not None:
        cache_dir = Path(override).expanduser()
    else:
        cache_dir = Path.home() / ".cache" / "scpseudo" / "msigdb"
    cache_dir.mkdir(parents=True, exist_ok=True)
    return cache_dir


def _http_get(url: str) -> bytes:
    LOGGER.debug("HTTP GET: %s", url)
    try:
        with urllib.request.urlopen(url) as resp:
            return resp.read()
    except urllib.error.URLError as e:
        raise RuntimeError(f"Failed to fetch URL {url!r}: {e}") from e


def _release_key(v: str) -> Tuple[int, int]:
    year, sub = v.split(".")[:2]
    return int(year), int(sub)


def _discover_latest_msigdb_release(species_code: str = "Hs") -> str:
    """Latest '<year>.<n>.<species>' directory; fixed fallback when offline."""
    try:
        html = _http_get(MSIGDB_BASE_URL + "/").decode("utf-8", errors="ignore")
    except RuntimeError as e:
        fallback = f"{MSIGDB_FALLBACK_RELEASE}.{species_code}"
        LOGGER.warning("Could not list MSigDB releases (%s); using %s.", e, fallback)
        return fallback

    candidates = set(re.findall(rf"(\d{{4}}\.\d+\.{re.escape(species_code)})/", html))
    if not candidates:
        fallback = f"{MSIGDB_FALLBACK_RELEASE}.{species_code}"
        LOGGER.warning("No MSigDB release directories found; using %s.", fallback)
        return fallback
    latest = sorted(candidates, key=_release_key)[-1]
    LOGGER.info("Detected latest MSigDB release: %s", latest)
    return latest


def msigdb_keywords(fname: str) -> List[str]:
    """
    Keyword aliases for an MSigDB file name.

    h.all.v2023.1.Hs.symbols.gmt        -> H_ALL, ALL, HALLMARK
    c2.cp.reactome.v2023.1.Hs.symbols.gmt -> C2_CP_REACTOME, REACTOME
    """
    base = fname.split(".v")[0]
    parts = base.split(".")
    keys = ["_".join(parts).upper()]
    if len(parts) >= 2:
        keys.append(parts[-1].upper())
    if base.startswith("h.all"):
        keys.append("HALLMARK")
    return keys


def _download_msigdb_release(release: str) -> Dict[str, str]:
    cache_dir = _get_msigdb_cache_dir()
    release_dir = cache_dir / release
    release_dir.mkdir(parents=True, exist_ok=True)

    base_url = f"{MSIGDB_BASE_URL}/{release}/"
    html = _http_get(base_url).decode("utf-8", errors="ignore")
    gmt_files = sorted(set(re.findall(r'href="([^"]+\.symbols\.gmt)"', html)))
    if not gmt_files:
        raise RuntimeError(f"No .symbols.gmt files found in MSigDB release {release}")

    index: Dict[str, str] = {}
    for fname in gmt_files:
        dest = release_dir / fname
        if not dest.exists():
            LOGGER.info("Downloading MSigDB file: %s", fname)
            dest.write_bytes(_http_get(base_url + fname))
        for key in msigdb_keywords(fname):
            index.setdefault(key, str(dest))

    index_path = cache_dir / MSIGDB_INDEX_FILENAME
    index_path.write_text(json.dumps({"release": release, "files": index}, indent=2))
    LOGGER.info("MSigDB index written to %s (keywords: %d)", index_path, len(index))
    return index


def _load_msigdb_index() -> Tuple[str, Dict[str, str]]:
    """(release, keyword -> gmt path); downloads the latest release if no cached index."""
    index_path = _get_msigdb_cache_dir() / MSIGDB_INDEX_FILENAME
    if index_path.exists():
        try:
            obj = json.loads(index_path.read_text())
        except json.JSONDecodeError as e:
            LOGGER.warning("Failed to parse MSigDB index %s: %s", index_path, e)
        else:
            release, files = obj.get("release"), obj.get("files", {})
            if isinstance(release, str) and isinstance(files, dict) and files:
                return release, files

    release = _discover_latest_msigdb_release(species_code="Hs")
    return release, _download_msigdb_release(release)


def list_available_msigdb_keywords() -> List[str]:
    _, index = _load_msigdb_index()
    return sorted(index.keys())


def resolve_gene_set_sources(user_spec: Optional[List[str]]) -> List[Tuple[str, Path]]:
    """
    Resolve gene-set specifiers into (label, gmt path) pairs.

    Items ending in .gmt are local files; anything else is an MSigDB keyword
    (resolved through the local cache, downloading on first use). Unresolvable
    items are skipped with a warning; ValueError if nothing resolves.
    """
    spec = [str(x).strip() for x in (user_spec or []) if str(x).strip()]
    if not spec:
        raise ValueError("Empty gene-set specification.")

    out: List[Tuple[str, Path]] = []
    unresolved: List[str] = []
    index: Optional[Dict[str, str]] = None

    for item in spec:
        if item.lower().endswith(".gmt"):
            path = Path(item)
            if not path.is_file():
                LOGGER.warning("Custom GMT file '%s' does not exist; skipping.", path)
                unresolved.append(item)
                continue
            out.append((path.stem, path))
            continue

        if index is None:
            release, index = _load_msigdb_index()
            LOGGER.info("Resolving gene sets against MSigDB release %s", release)
        key = item.upper()
        if key not in index:
            LOGGER.warning(
                "Unknown MSigDB keyword '%s'. Known examples: %s",
                key, ", ".join(sorted(index.keys())[:10]),
            )
            unresolved.append(item)
            continue
        out.append((key, Path(index[key])))

    if not out:
        raise ValueError(f"No resolvable gene sets from spec: {spec}. Unresolved: {unresolved}")
    LOGGER.info("Resolved gene sets: %s", ", ".join(f"{k} -> {p}" for k, p in out))
    return out


def load_gene_sets(user_spec: Optional[List[str]]) -> Dict[str, Dict[str, List[str]]]:
    """{collection label: {pathway: genes}} for every resolvable source."""
    return {label: read_gmt(path) for label, path in resolve_gene_set_sources(user_spec)}
