"""
Data Download Module - NCBI GEO Integration
============================================

This module retrieves expression series from the NCBI Gene Expression
Omnibus (GEO) and assembles them into AnnData objects.

Key functions:
- list_series_matrix_files: Find the series-matrix files of a GSE record
- parse_series_matrix: Parse a series-matrix file into AnnData
- attach_platform_annotation: Add the GPL probe annotation table to .var
- get_geo: Download every series-matrix bundle of a series
- fetch_series: Download a series and unwrap the single bundle
- download_supplementary_archive: Download and extract the *_RAW.tar archive

The AnnData layout is samples x probes:
- adata.X: expression values
- adata.obs: sample metadata (one row per GSM, from the !Sample_* lines)
- adata.var: probe metadata (one row per probe, from the GPL table)
- adata.uns['series']: series metadata (from the !Series_* lines)

Author: Alfred3005
"""

import gzip
import io
import logging
import os
import re
import tarfile
from collections import Counter
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import anndata as ad
import numpy as np
import pandas as pd
import requests
from tqdm import tqdm

try:
    import GEOparse
except ImportError:
    raise ImportError(
        "GEOparse not installed. "
        "Install with: pip install GEOparse"
    )

from .utils import setup_logging, ensure_dir, log_memory_usage


GEO_HTTPS_ROOT = "https://ftp.ncbi.nlm.nih.gov/geo"

_ACCESSION_RE = re.compile(r"^(GSE|GPL|GSM|GDS)(\d+)$")
_MATRIX_LINK_RE = re.compile(
    r'href="(?P<name>GSE\d+(?:-GPL\d+)?_series_matrix\.txt\.gz)"'
)
_CHUNK_SIZE = 1024 * 1024


class GEOFetchError(RuntimeError):
    """Raised when a GEO record cannot be downloaded or parsed."""


def geo_directory_stub(accession: str) -> str:
    """
    Return the GEO FTP range directory for an accession.

    GEO groups records by dropping the last three digits:
    GSE15907 -> GSE15nnn, GSE1 -> GSEnnn.

    Parameters
    ----------
    accession : str
        GEO accession (GSE, GPL, GSM or GDS)

    Returns
    -------
    str
        Range directory name

    Examples
    --------
    >>> geo_directory_stub("GSE15907")
    'GSE15nnn'
    """
    match = _ACCESSION_RE.match(accession.strip().upper())
    if match is None:
        raise GEOFetchError(f"Not a GEO accession: {accession!r}")

    prefix, digits = match.groups()
    return f"{prefix}{digits[:-3]}nnn"


def series_url(accession: str, subdir: str) -> str:
    """Build the HTTPS URL of a series sub-directory (matrix/, suppl/, ...)."""
    accession = accession.strip().upper()
    stub = geo_directory_stub(accession)
    return f"{GEO_HTTPS_ROOT}/series/{stub}/{accession}/{subdir}/"


def list_series_matrix_files(
    accession: str,
    session: Optional[requests.Session] = None,
    timeout: Optional[float] = None,
    logger: Optional[logging.Logger] = None
) -> List[str]:
    """
    List the series-matrix files published for a GEO series.

    A series that spans several platforms has one file per platform
    (``GSExxx-GPLyyy_series_matrix.txt.gz``).

    Parameters
    ----------
    accession : str
        GEO series accession, e.g. "GSE15907"
    session : requests.Session, optional
        HTTP session to reuse
    timeout : float, optional
        Request timeout in seconds (None = no timeout)
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    list of str
        Sorted file names

    Raises
    ------
    GEOFetchError
        If the series is unknown or the listing cannot be retrieved
    """
    if logger is None:
        logger = setup_logging()

    url = series_url(accession, "matrix")
    logger.info(f"Listing series matrix files: {url}")

    http = session if session is not None else requests.Session()

    try:
        response = http.get(url, timeout=timeout)
        if response.status_code == 404:
            raise GEOFetchError(f"Unknown GEO series: {accession}")
        response.raise_for_status()
    except requests.RequestException as e:
        logger.error(f"Failed to list matrix files for {accession}: {str(e)}")
        raise GEOFetchError(
            f"Could not list series matrix files for {accession}"
        ) from e
    finally:
        if session is None:
            http.close()

    names = sorted(set(
        m.group('name') for m in _MATRIX_LINK_RE.finditer(response.text)
    ))

    if not names:
        raise GEOFetchError(f"No series matrix files published for {accession}")

    logger.info(f"Found {len(names)} series matrix file(s): {', '.join(names)}")

    return names


def download_file(
    url: str,
    output_path: Path,
    session: Optional[requests.Session] = None,
    timeout: Optional[float] = None,
    logger: Optional[logging.Logger] = None
) -> Path:
    """
    Download a file with a progress bar, reusing it if already present.

    Parameters
    ----------
    url : str
        Source URL
    output_path : Path
        Destination file
    session : requests.Session, optional
        HTTP session to reuse
    timeout : float, optional
        Request timeout in seconds
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    Path
        Path to the downloaded file

    Raises
    ------
    GEOFetchError
        If the download fails. Partial files are removed.
    """
    if logger is None:
        logger = setup_logging()

    output_path = Path(output_path)
    ensure_dir(output_path.parent)

    # Check if already downloaded
    if output_path.exists():
        logger.info(f"File already exists: {output_path}")
        return output_path

    logger.info(f"Downloading: {url}")

    http = session if session is not None else requests.Session()

    try:
        with http.get(url, stream=True, timeout=timeout) as response:
            if response.status_code == 404:
                raise GEOFetchError(f"Not found on GEO: {url}")
            response.raise_for_status()

            total = int(response.headers.get('content-length', 0)) or None

            with open(output_path, 'wb') as handle, tqdm(
                total=total,
                unit='B',
                unit_scale=True,
                desc=output_path.name
            ) as progress:
                for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
                    handle.write(chunk)
                    progress.update(len(chunk))

    except (requests.RequestException, OSError, GEOFetchError) as e:
        logger.error(f"Failed to download {url}: {str(e)}")
        # Clean up partial download
        if output_path.exists():
            output_path.unlink()
        if isinstance(e, GEOFetchError):
            raise
        raise GEOFetchError(f"Download failed: {url}") from e

    finally:
        if session is None:
            http.close()

    file_size = output_path.stat().st_size / (1024 ** 2)  # MB
    logger.info(f"Downloaded {output_path.name} ({file_size:.1f} MB)")

    return output_path


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == '"' and value[-1] == '"':
        return value[1:-1]
    return value


def parse_series_matrix(
    path: Union[str, Path],
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """
    Parse a GEO series-matrix file into AnnData.

    Header lines are split into series metadata (``!Series_*``) and
    sample metadata (``!Sample_*``). Repeated sample keys, such as
    ``!Sample_characteristics_ch1``, are numbered ``characteristics_ch1``,
    ``characteristics_ch1.1``, ``characteristics_ch1.2``... The data table
    between ``!series_matrix_table_begin`` and ``!series_matrix_table_end``
    becomes ``adata.X`` (samples x probes); "null" cells become NaN.

    Parameters
    ----------
    path : str or Path
        Series-matrix file (plain text or gzip)
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    AnnData
        Expression bundle with sample metadata in .obs, probe IDs in
        .var_names and series metadata in .uns['series']

    Raises
    ------
    GEOFetchError
        If the file is malformed

    Examples
    --------
    >>> adata = parse_series_matrix("data/raw/GSE15907_series_matrix.txt.gz")
    >>> adata.obs[['title', 'geo_accession']].head()
    """
    if logger is None:
        logger = setup_logging()

    path = Path(path)
    opener = gzip.open if path.suffix == '.gz' else open

    series: Dict[str, List[str]] = {}
    samples: Dict[str, List[str]] = {}
    seen = Counter()
    table_lines: Optional[List[str]] = None
    table_closed = False

    logger.info(f"Parsing series matrix: {path}")

    try:
        with opener(path, 'rt', encoding='utf-8', errors='replace') as handle:
            for line in handle:
                line = line.rstrip('\r\n')

                if table_lines is not None:
                    if line.lower().startswith('!series_matrix_table_end'):
                        table_closed = True
                        break
                    table_lines.append(line)
                    continue

                if line.lower().startswith('!series_matrix_table_begin'):
                    table_lines = []
                    continue

                if not line.startswith('!'):
                    continue

                key, _, rest = line.partition('\t')
                values = [_unquote(v) for v in rest.split('\t')] if rest else []

                if key.startswith('!Sample_'):
                    name = key[len('!Sample_'):]
                    seen[name] += 1
                    if seen[name] > 1:
                        name = f"{name}.{seen[name] - 1}"
                    samples[name] = values
                elif key.startswith('!Series_'):
                    name = key[len('!Series_'):]
                    series.setdefault(name, []).append('\t'.join(values))
    except (OSError, EOFError) as e:
        raise GEOFetchError(f"Could not read series matrix {path}") from e

    if table_lines is None or not table_closed:
        raise GEOFetchError(f"Malformed series matrix (no data table): {path}")

    if 'geo_accession' not in samples:
        raise GEOFetchError(f"Malformed series matrix (no sample accessions): {path}")

    try:
        table = pd.read_csv(
            io.StringIO('\n'.join(table_lines)),
            sep='\t',
            index_col=0,
            dtype={'ID_REF': str},
            na_values=['null', 'NULL', 'NA', '']
        )
        obs = pd.DataFrame(samples)
    except (ValueError, pd.errors.ParserError) as e:
        raise GEOFetchError(f"Malformed series matrix {path}: {str(e)}") from e

    table.index = table.index.astype(str)
    table.index.name = None
    obs.index = obs['geo_accession'].astype(str)
    obs.index.name = None

    if set(table.columns) != set(obs.index):
        raise GEOFetchError(
            f"Sample columns in the data table do not match !Sample_geo_accession: {path}"
        )

    obs = obs.loc[table.columns]

    try:
        values = table.to_numpy(dtype=np.float64).T
    except ValueError as e:
        raise GEOFetchError(f"Non-numeric expression values in {path}") from e

    adata = ad.AnnData(
        X=values,
        obs=obs,
        var=pd.DataFrame(index=table.index)
    )

    series_meta: Dict[str, Any] = {
        key: vals[0] if len(vals) == 1 else vals
        for key, vals in series.items()
    }
    if 'platform_id' in obs.columns and len(obs) > 0:
        series_meta['platform_id'] = str(obs['platform_id'].iloc[0])
    series_meta['source_file'] = path.name
    adata.uns['series'] = series_meta

    logger.info(
        f"Parsed {adata.n_obs:,} samples x {adata.n_vars:,} probes "
        f"(platform: {series_meta.get('platform_id', 'unknown')})"
    )

    return adata


def attach_platform_annotation(
    adata: ad.AnnData,
    platform_id: str,
    destdir: Union[str, Path],
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """
    Attach the GPL platform annotation table to adata.var.

    The platform table is aligned by probe ID; probes missing from the
    platform table keep empty annotation so the probe set never changes.

    Parameters
    ----------
    adata : AnnData
        Expression bundle from parse_series_matrix
    platform_id : str
        GEO platform accession, e.g. "GPL6246"
    destdir : str or Path
        Cache directory for the platform SOFT file
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    AnnData
        The same AnnData with platform columns in .var

    Raises
    ------
    GEOFetchError
        If the platform record cannot be retrieved
    """
    if logger is None:
        logger = setup_logging()

    destdir = ensure_dir(destdir)

    logger.info(f"Retrieving platform annotation: {platform_id}")

    try:
        gpl = GEOparse.get_GEO(geo=platform_id, destdir=str(destdir), silent=True)
    except Exception as e:
        logger.error(f"Failed to retrieve platform {platform_id}: {str(e)}")
        raise GEOFetchError(f"Could not retrieve platform {platform_id}") from e

    table = gpl.table
    if table is None or 'ID' not in table.columns:
        raise GEOFetchError(f"Platform {platform_id} has no annotation table")

    annotation = table.copy()
    annotation['ID'] = annotation['ID'].astype(str)
    annotation = annotation.drop_duplicates('ID').set_index('ID')
    annotation.index.name = None

    var = annotation.reindex(adata.var_names)

    n_missing = var.isna().all(axis=1).sum()
    if n_missing > 0:
        logger.warning(
            f"{n_missing:,} probes have no entry in the {platform_id} annotation table"
        )

    adata.var = var

    logger.info(
        f"Attached {annotation.shape[1]} annotation columns to {adata.n_vars:,} probes"
    )

    return adata


def get_geo(
    accession: str,
    destdir: Union[str, Path] = "data/raw",
    platform: Optional[str] = None,
    annotate_platform: bool = True,
    session: Optional[requests.Session] = None,
    timeout: Optional[float] = None,
    logger: Optional[logging.Logger] = None
) -> List[ad.AnnData]:
    """
    Download a GEO series as a list of AnnData bundles.

    One bundle is returned per series-matrix file, i.e. per platform.
    Single-platform series therefore come back as a one-element list.

    Parameters
    ----------
    accession : str
        GEO series accession, e.g. "GSE15907"
    destdir : str or Path, default "data/raw"
        Download cache directory
    platform : str, optional
        Only download the matrix of this platform (multi-platform series)
    annotate_platform : bool, default True
        Whether to attach the GPL annotation table to .var
    session : requests.Session, optional
        HTTP session to reuse
    timeout : float, optional
        Request timeout in seconds
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    list of AnnData
        One expression bundle per series-matrix file

    Examples
    --------
    >>> bundles = get_geo("GSE15907", Path("data/raw"))
    >>> adata = bundles[0]
    """
    if logger is None:
        logger = setup_logging()

    accession = accession.strip().upper()
    destdir = ensure_dir(destdir)

    logger.info(f"Retrieving GEO series {accession}")

    owns_session = session is None
    if owns_session:
        session = requests.Session()

    try:
        names = list_series_matrix_files(
            accession, session=session, timeout=timeout, logger=logger
        )

        if platform is not None and len(names) > 1:
            names = [n for n in names if f"-{platform.upper()}_" in n]
            if not names:
                raise GEOFetchError(
                    f"Series {accession} has no matrix for platform {platform}"
                )

        base_url = series_url(accession, "matrix")
        bundles = []

        for name in names:
            path = download_file(
                base_url + name,
                destdir / name,
                session=session,
                timeout=timeout,
                logger=logger
            )
            adata = parse_series_matrix(path, logger=logger)

            platform_id = adata.uns['series'].get('platform_id')
            if annotate_platform and platform_id:
                adata = attach_platform_annotation(
                    adata, platform_id, destdir, logger=logger
                )

            bundles.append(adata)

    finally:
        if owns_session:
            session.close()

    log_memory_usage(logger)

    return bundles


def fetch_series(
    accession: str,
    destdir: Union[str, Path] = "data/raw",
    platform: Optional[str] = None,
    annotate_platform: bool = True,
    session: Optional[requests.Session] = None,
    timeout: Optional[float] = None,
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """
    Download a GEO series and return its single expression bundle.

    Series-level queries come back as a collection; this unwraps the
    one element. Multi-platform series need an explicit ``platform``.

    Parameters
    ----------
    accession : str
        GEO series accession, e.g. "GSE15907"
    destdir : str or Path, default "data/raw"
        Download cache directory
    platform : str, optional
        Platform to select when the series has several
    annotate_platform : bool, default True
        Whether to attach the GPL annotation table to .var
    session : requests.Session, optional
        HTTP session to reuse
    timeout : float, optional
        Request timeout in seconds
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    AnnData
        Expression bundle

    Raises
    ------
    GEOFetchError
        On network failure, unknown accession, malformed files, or when
        the series has several platforms and none was selected

    Examples
    --------
    >>> adata = fetch_series("GSE15907", Path("data/raw"), logger=logger)
    >>> print(adata)
    """
    bundles = get_geo(
        accession,
        destdir=destdir,
        platform=platform,
        annotate_platform=annotate_platform,
        session=session,
        timeout=timeout,
        logger=logger
    )

    if len(bundles) != 1:
        platforms = [b.uns['series'].get('platform_id', '?') for b in bundles]
        raise GEOFetchError(
            f"Series {accession} has {len(bundles)} platforms "
            f"({', '.join(platforms)}); select one with platform="
        )

    return bundles[0]


def _is_within(directory: Path, member: tarfile.TarInfo) -> bool:
    target = (directory / member.name).resolve()
    try:
        return os.path.commonpath([directory.resolve(), target]) == str(directory.resolve())
    except ValueError:
        return False


def download_supplementary_archive(
    accession: str,
    destdir: Union[str, Path] = "data/raw",
    extract: bool = True,
    session: Optional[requests.Session] = None,
    timeout: Optional[float] = None,
    logger: Optional[logging.Logger] = None
) -> Path:
    """
    Download the ``<GSE>_RAW.tar`` supplementary archive of a series.

    The archive holds the per-sample raw files (e.g. CEL files). It is not
    needed by the analysis, which works from the series matrix.

    Parameters
    ----------
    accession : str
        GEO series accession
    destdir : str or Path, default "data/raw"
        Download directory
    extract : bool, default True
        Extract the archive into ``destdir/<GSE>_RAW/``
    session : requests.Session, optional
        HTTP session to reuse
    timeout : float, optional
        Request timeout in seconds
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    Path
        Extraction directory when extract=True, otherwise the archive path
    """
    if logger is None:
        logger = setup_logging()

    accession = accession.strip().upper()
    destdir = ensure_dir(destdir)

    name = f"{accession}_RAW.tar"
    archive_path = download_file(
        series_url(accession, "suppl") + name,
        destdir / name,
        session=session,
        timeout=timeout,
        logger=logger
    )

    if not extract:
        return archive_path

    extract_dir = ensure_dir(destdir / f"{accession}_RAW")

    try:
        with tarfile.open(archive_path, 'r') as tar:
            members = tar.getmembers()
            safe_members = [m for m in members if _is_within(extract_dir, m)]
            skipped = len(members) - len(safe_members)
            if skipped:
                logger.warning(f"Skipped {skipped} archive members outside {extract_dir}")
            tar.extractall(path=extract_dir, members=safe_members)
    except tarfile.TarError as e:
        logger.error(f"Failed to extract {archive_path}: {str(e)}")
        raise GEOFetchError(f"Could not extract {archive_path}") from e

    logger.info(f"Extracted {len(safe_members)} files to {extract_dir}")

    return extract_dir
