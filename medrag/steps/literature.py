"""
Phase 3: literature search (PubMed, medRxiv, bioRxiv).

- PubMedSource:
  E-utilities esearch (JSON) for PMIDs, then efetch (XML) for the records.
  Every request goes through the instance's RateLimitedQueue, whose delay
  depends on whether an NCBI API key is configured.
- MedRxivSource / BioRxivSource:
  The 'details' API over a date window, filtered client-side by the search
  terms (bioRxiv additionally by medically relevant categories).
- LiteratureSearch:
  Fans out to the sources in parallel, isolates per-source failures, sorts and
  truncates the merged list, and caches the result by content hash.
- LiteratureSearchStep:
  The optional pipeline phase; skipped when literature search is disabled.
"""

import concurrent.futures
import re
import time
import xml.etree.ElementTree as ET
from datetime import date, timedelta
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

import requests
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from ..core.base import PipelineStep
from ..core.cache import ResultCache, make_key
from ..core.config import LiteratureSettings, SortBy
from ..core.models import (
    LiteratureSearchResult,
    LiteratureSource,
    Phase,
    PipelineState,
    Reference,
)
from ..core.rate_limit import RateLimitedQueue

MAX_AUTHORS = 5
MAX_MESH_TERMS = 3
MAX_FALLBACK_TERMS = 2

PUBMED_RELEVANCE = 0.8
PREPRINT_RELEVANCE = 0.6

FILTER_WITH_MESH = "clinical trial[pt] OR systematic review[pt] OR meta-analysis[pt] OR review[pt] OR case reports[pt]"
FILTER_WITHOUT_MESH = "clinical[sb] OR systematic[sb] OR meta-analysis[pt] OR review[pt] OR case reports[pt]"

MEDICAL_CATEGORIES = (
    "medicine", "clinical medicine", "epidemiology", "pathology",
    "pharmacology", "immunology", "neuroscience", "biochemistry",
)

STOP_WORDS = {
    "the", "and", "for", "with", "without", "from", "into", "of", "in", "on", "at", "to", "or",
    "patient", "patients", "year", "years", "old", "has", "have", "was", "were", "are", "this", "that",
}


class LiteratureSearchOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_results: int = Field(10, ge=0)
    years_back: Optional[int] = Field(None, ge=0)
    include_preprints: bool = True
    sort_by: SortBy = SortBy.RELEVANCE
    use_mesh_terms: bool = False
    mesh_terms: List[str] = Field(default_factory=list)


class LiteratureSourceClient(Protocol):
    name: str

    def search(self, terms: List[str], options: LiteratureSearchOptions) -> List[Reference]: ...


# -------------------------------------------------------------------------
# Query helpers
# -------------------------------------------------------------------------
def extract_terms(text: str) -> List[str]:
    """Lower-cased words longer than two characters, minus stop words, first occurrence kept."""
    words = re.split(r"[\s,;:()\"]+", (text or "").lower())
    out: List[str] = []
    for word in words:
        if len(word) > 2 and word not in STOP_WORDS and word not in out:
            out.append(word)
    return out


def _dedupe_terms(terms: Sequence[str]) -> List[str]:
    seen = set()
    out = []
    for term in terms:
        term = (term or "").strip()
        if term and term.lower() not in seen:
            seen.add(term.lower())
            out.append(term)
    return out


def _quote(term: str) -> str:
    return f'"{term}"' if " " in term else term


def build_pubmed_query(terms: Sequence[str], options: LiteratureSearchOptions, today: Optional[date] = None) -> str:
    """
    Boolean PubMed query.

    With MeSH terms (up to 3) they are ANDed together and ORed with the top two
    free-text terms as a recall fallback; without them all free-text terms are
    ORed. A publication-date filter and a study-type filter are appended.
    """
    mesh = []
    if options.use_mesh_terms:
        mesh = [f'"{m.strip()}"[MeSH Terms]' for m in options.mesh_terms if m and m.strip()][:MAX_MESH_TERMS]

    if mesh:
        query = f"({' AND '.join(mesh)})"
        if terms:
            fallback = " OR ".join(_quote(t) for t in terms[:MAX_FALLBACK_TERMS])
            query = f"({query} OR ({fallback}))"
    else:
        query = f"({' OR '.join(_quote(t) for t in terms)})"

    if options.years_back:
        start_year = (today or date.today()).year - options.years_back
        query += f" AND {start_year}:3000[PDAT]"

    query += f" AND ({FILTER_WITH_MESH if mesh else FILTER_WITHOUT_MESH})"
    return query


def matches_terms(text: str, terms: Sequence[str]) -> bool:
    lowered = (text or "").lower()
    return any(term.lower() in lowered for term in terms)


def is_medically_relevant(category: Optional[str]) -> bool:
    if not category:
        return False
    lowered = category.lower()
    return any(cat in lowered for cat in MEDICAL_CATEGORIES)


def sort_references(references: List[Reference], sort_by: SortBy) -> List[Reference]:
    if sort_by == SortBy.DATE:
        key: Callable[[Reference], Any] = lambda r: r.year or 0
    elif sort_by == SortBy.CITATIONS:
        key = lambda r: r.citation_count or 0
    else:
        key = lambda r: r.relevance_score
    return sorted(references, key=key, reverse=True)


# -------------------------------------------------------------------------
# PubMed
# -------------------------------------------------------------------------
def _text(node: Optional[ET.Element]) -> str:
    if node is None:
        return ""
    return " ".join("".join(node.itertext()).split())


def _pub_year(article: ET.Element) -> Optional[int]:
    year = _text(article.find(".//Article/Journal/JournalIssue/PubDate/Year"))
    if not year:
        medline_date = _text(article.find(".//Article/Journal/JournalIssue/PubDate/MedlineDate"))
        match = re.search(r"\d{4}", medline_date)
        year = match.group(0) if match else ""
    return int(year) if year.isdigit() else None


def _free_full_text(article: ET.Element) -> bool:
    """PMC release date in the history, or a "free full text" marker anywhere in the record."""
    if article.find(".//PubmedData/History/PubMedPubDate[@PubStatus='pmc-release']") is not None:
        return True
    return "free full text" in " ".join(article.itertext()).lower()


def parse_pubmed_xml(xml_text: str) -> List[Reference]:
    """efetch XML -> References. Raises ET.ParseError on malformed XML."""
    root = ET.fromstring(xml_text)
    references = []

    for article in root.findall(".//PubmedArticle"):
        pmid = _text(article.find(".//MedlineCitation/PMID"))
        title = _text(article.find(".//Article/ArticleTitle"))
        if not pmid or not title:
            continue

        parts = []
        for el in article.findall(".//Abstract/AbstractText"):
            txt = _text(el)
            if not txt:
                continue
            label = el.attrib.get("Label") or el.attrib.get("NlmCategory")
            parts.append(f"{label}: {txt}" if label else txt)

        authors = []
        for author in article.findall(".//AuthorList/Author"):
            last = _text(author.find("LastName"))
            if last:
                authors.append(f"{_text(author.find('ForeName'))} {last}".strip())

        doi = None
        pmc = False
        for aid in article.findall(".//PubmedData/ArticleIdList/ArticleId"):
            id_type = aid.attrib.get("IdType")
            if id_type == "doi" and not doi:
                doi = _text(aid) or None
            elif id_type == "pmc":
                pmc = True
        if doi is None:
            doi = _text(article.find(".//Article/ELocationID[@EIdType='doi']")) or None

        references.append(Reference(
            id=pmid,
            doi=doi,
            title=title,
            authors=tuple(authors[:MAX_AUTHORS]),
            journal=_text(article.find(".//Article/Journal/Title")) or "Unknown Journal",
            year=_pub_year(article),
            abstract=" ".join(parts),
            relevance_score=PUBMED_RELEVANCE,
            source=LiteratureSource.PUBMED,
            url=f"https://pubmed.ncbi.nlm.nih.gov/{pmid}/",
            open_access=pmc or _free_full_text(article),
        ))

    return references


class PubMedSource:
    name = "PubMed"

    def __init__(
        self,
        settings: LiteratureSettings,
        queue: RateLimitedQueue,
        session: Optional[requests.Session] = None,
        today: Callable[[], date] = date.today,
    ):
        self.settings = settings
        self.queue = queue
        self.session = session or requests.Session()
        self.today = today

    def _params(self, params: Dict[str, Any]) -> Dict[str, Any]:
        params = dict(params, tool=self.settings.pubmed_tool)
        if self.settings.pubmed_api_key:
            params["api_key"] = self.settings.pubmed_api_key
        if self.settings.pubmed_email:
            params["email"] = self.settings.pubmed_email
        return params

    def _request(self, endpoint: str, params: Dict[str, Any]) -> requests.Response:
        url = f"{self.settings.pubmed_base_url}/{endpoint}"
        resp = self.session.get(url, params=self._params(params), timeout=self.settings.request_timeout)
        resp.raise_for_status()
        return resp

    def _get(self, endpoint: str, params: Dict[str, Any]) -> requests.Response:
        return self.queue.run(self._request, endpoint, params)

    def search(self, terms: List[str], options: LiteratureSearchOptions) -> List[Reference]:
        query = build_pubmed_query(terms, options, today=self.today())
        logger.debug(f"[PubMed] query: {query}")

        resp = self._get("esearch.fcgi", {
            "db": "pubmed",
            "term": query,
            "retmax": max(options.max_results, 1),
            "retmode": "json",
        })
        pmids = (resp.json().get("esearchresult") or {}).get("idlist") or []
        if not pmids:
            logger.debug("[PubMed] no PMIDs for query")
            return []

        resp = self._get("efetch.fcgi", {"db": "pubmed", "id": ",".join(pmids), "retmode": "xml"})
        references = parse_pubmed_xml(resp.text)
        logger.debug(f"[PubMed] parsed {len(references)} of {len(pmids)} records")
        return references


# -------------------------------------------------------------------------
# Preprint servers
# -------------------------------------------------------------------------
class PreprintSource:
    server: str
    source: LiteratureSource
    journal: str
    base_url_field: str

    def __init__(
        self,
        settings: LiteratureSettings,
        session: Optional[requests.Session] = None,
        today: Callable[[], date] = date.today,
    ):
        self.settings = settings
        self.session = session or requests.Session()
        self.today = today

    @property
    def name(self) -> str:
        return self.journal.split(" ")[0]

    def date_range(self, years_back: int):
        end = self.today()
        try:
            start = end.replace(year=end.year - years_back)
        except ValueError:
            # Feb 29 -> Feb 28
            start = (end - timedelta(days=1)).replace(year=end.year - years_back)
        return start.isoformat(), end.isoformat()

    def accept(self, paper: Dict[str, Any], terms: List[str]) -> bool:
        return matches_terms(f"{paper.get('title', '')} {paper.get('abstract', '')}", terms)

    def search(self, terms: List[str], options: LiteratureSearchOptions) -> List[Reference]:
        if not terms:
            return []
        start, end = self.date_range(options.years_back or self.settings.preprint_window_years)
        url = f"{getattr(self.settings, self.base_url_field)}/{self.server}/{start}/{end}/0"

        resp = self.session.get(url, timeout=self.settings.request_timeout)
        resp.raise_for_status()
        papers = resp.json().get("collection") or []

        references = []
        for paper in papers:
            if len(references) >= options.max_results:
                break
            if isinstance(paper, dict) and paper.get("title") and self.accept(paper, terms):
                references.append(self.to_reference(paper))
        logger.debug(f"[{self.name}] {len(references)} of {len(papers)} preprints matched")
        return references

    def to_reference(self, paper: Dict[str, Any]) -> Reference:
        doi = (paper.get("doi") or "").strip() or None
        published = str(paper.get("date") or "")
        authors = [a.strip() for a in str(paper.get("authors") or "").split(";") if a.strip()]
        return Reference(
            id=doi or paper["title"],
            doi=doi,
            title=str(paper["title"]).strip(),
            authors=tuple(authors[:MAX_AUTHORS]),
            journal=self.journal,
            year=int(published[:4]) if published[:4].isdigit() else None,
            abstract=str(paper.get("abstract") or "").strip(),
            relevance_score=PREPRINT_RELEVANCE,
            source=self.source,
            url=f"https://www.{self.server}.org/content/{doi}" if doi else "",
            open_access=True,
        )


class MedRxivSource(PreprintSource):
    server = "medrxiv"
    source = LiteratureSource.MEDRXIV
    journal = "medRxiv (preprint)"
    base_url_field = "medrxiv_base_url"


class BioRxivSource(PreprintSource):
    server = "biorxiv"
    source = LiteratureSource.BIORXIV
    journal = "bioRxiv (preprint)"
    base_url_field = "biorxiv_base_url"

    def accept(self, paper: Dict[str, Any], terms: List[str]) -> bool:
        return super().accept(paper, terms) and is_medically_relevant(paper.get("category"))


# -------------------------------------------------------------------------
# Orchestrator
# -------------------------------------------------------------------------
class LiteratureSearch:
    def __init__(
        self,
        pubmed: LiteratureSourceClient,
        preprints: Sequence[LiteratureSourceClient],
        cache: ResultCache,
    ):
        self.pubmed = pubmed
        self.preprints = list(preprints)
        self.cache: ResultCache[LiteratureSearchResult] = cache

    def search_literature(
        self,
        query_terms: Sequence[str],
        options: Optional[LiteratureSearchOptions] = None,
    ) -> LiteratureSearchResult:
        options = options or LiteratureSearchOptions()
        start = time.time()
        terms = _dedupe_terms(query_terms)
        has_mesh = options.use_mesh_terms and any(m.strip() for m in options.mesh_terms)
        if not terms and not has_mesh:
            return LiteratureSearchResult()

        key = make_key(terms, options.model_dump(mode="json"))
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("[LiteratureSearch] using cached result")
            return cached

        sources: List[LiteratureSourceClient] = [self.pubmed]
        if options.include_preprints:
            sources.extend(self.preprints)

        found: Dict[str, List[Reference]] = {}
        failed = []
        with concurrent.futures.ThreadPoolExecutor(max_workers=len(sources)) as executor:
            future_map = {executor.submit(src.search, terms, options): src.name for src in sources}
            for future in concurrent.futures.as_completed(future_map):
                name = future_map[future]
                try:
                    found[name] = future.result()
                except Exception as e:
                    logger.warning(f"[LiteratureSearch] {name} failed: {e}")
                    failed.append(name)
                    found[name] = []

        merged = [ref for src in sources for ref in found[src.name]]
        ranked = sort_references(merged, options.sort_by)[:options.max_results]

        result = LiteratureSearchResult(
            references=ranked,
            total_found=len(merged),
            search_terms=terms,
            sources_searched=[src.name for src in sources],
            search_time_ms=int((time.time() - start) * 1000),
        )
        logger.info(
            f"[LiteratureSearch] {len(ranked)}/{len(merged)} references from {', '.join(result.sources_searched)}"
        )

        if failed:
            logger.warning(f"[LiteratureSearch] caching partial result without {', '.join(failed)}")
        self.cache.set(key, result)
        return result

    def search_with_mesh_terms(
        self,
        mesh_terms: Sequence[str],
        query_terms: Sequence[str],
        options: Optional[LiteratureSearchOptions] = None,
    ) -> LiteratureSearchResult:
        options = (options or LiteratureSearchOptions()).model_copy(
            update={"use_mesh_terms": True, "mesh_terms": list(mesh_terms)}
        )
        return self.search_literature(query_terms, options)

    def stats(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"cache": self.cache.stats()}
        queue = getattr(self.pubmed, "queue", None)
        if queue is not None:
            out["queue"] = queue.stats()
        return out


def literature_terms(condition_names: Sequence[str], symptom_names: Sequence[str], fallback_query: str) -> List[str]:
    terms = _dedupe_terms(list(condition_names) + list(symptom_names))
    return terms or extract_terms(fallback_query)


class LiteratureSearchStep(PipelineStep):
    phase = Phase.LITERATURE

    def should_run(self, state: PipelineState) -> bool:
        return (
            state.options.include_recent_papers
            and state.options.max_references > 0
            and self.services.literature is not None
        )

    def skip(self, state: PipelineState) -> PipelineState:
        state.literature = LiteratureSearchResult()
        return state

    def execute(self, state: PipelineState) -> PipelineState:
        entities = state.entities
        mesh_terms = entities.mesh_terms if entities is not None and state.options.use_mesh_terms else []
        terms = literature_terms(
            entities.condition_names if entities else [],
            entities.symptom_names if entities else [],
            state.queries.keyword_query,
        )
        options = LiteratureSearchOptions(
            max_results=state.options.max_references,
            years_back=state.options.years_back or None,
            include_preprints=state.options.include_preprints,
            sort_by=state.options.sort_by,
            use_mesh_terms=bool(mesh_terms),
            mesh_terms=mesh_terms,
        )
        self.log_artifact("Literature Search", {"terms": terms, "options": options.model_dump(mode="json")})

        state.literature = self.services.literature.search_literature(terms, options)
        return state

    def fallback(self, state: PipelineState, error: Exception) -> PipelineState:
        state.literature = LiteratureSearchResult()
        state.notes.append("literature search unavailable")
        return state
