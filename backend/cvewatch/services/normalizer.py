import re
from datetime import datetime, timezone
from pydantic import ValidationError

from cvewatch.exceptions import CveParseError
from cvewatch.schemas.cve import AffectedProduct, CveRecord, Enrichment

CVE_ID_RE = re.compile(r"^CVE-\d{4}-\d{4,}$")

# Feed metric key -> record field prefix, highest precedence first.
CVSS_VERSIONS = [
    ("cvssV4_0", "cvss40", "4.0"),
    ("cvssV3_1", "cvss31", "3.1"),
    ("cvssV3_0", "cvss30", "3.0"),
    ("cvssV2_0", "cvss2", "2.0"),
]


def severity_for_score(score: float | None) -> str | None:
    if score is None:
        return None
    if score >= 9.0:
        return "CRITICAL"
    if score >= 7.0:
        return "HIGH"
    if score >= 4.0:
        return "MEDIUM"
    if score > 0:
        return "LOW"
    return None


def normalize_name(value) -> str:
    return " ".join(str(value or "").lower().split())


class CveNormalizer:
    """Turns a raw CVE JSON 5 document into a CveRecord."""

    def normalize(self, raw: dict, enrichment: Enrichment | None = None) -> CveRecord:
        if not isinstance(raw, dict):
            raise CveParseError(None, "record is not a JSON object")

        metadata = raw.get("cveMetadata")
        if not isinstance(metadata, dict):
            raise CveParseError(None, "missing cveMetadata")
        cve_id = str(metadata.get("cveId") or "").strip().upper()
        if not CVE_ID_RE.match(cve_id):
            raise CveParseError(cve_id or None, "invalid CVE identifier")

        containers = raw.get("containers") or {}
        if not isinstance(containers, dict):
            raise CveParseError(cve_id, "malformed containers")
        cna = containers.get("cna") or {}
        adp = containers.get("adp") or []
        if not isinstance(cna, dict) or not isinstance(adp, list):
            raise CveParseError(cve_id, "malformed containers")

        try:
            fields = self._fields(cve_id, metadata, cna, adp)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            # Structures of unexpected shape deeper in the document
            raise CveParseError(cve_id, f"malformed record: {e}") from e

        try:
            record = CveRecord(**fields)
        except ValidationError as e:
            raise CveParseError(cve_id, f"invalid record: {e.errors()[0]['msg']}")
        if enrichment is not None:
            record = self.apply_enrichment(record, enrichment)
        return record

    def _fields(self, cve_id: str, metadata: dict, cna: dict, adp: list) -> dict:
        state = str(metadata.get("state") or "PUBLISHED").upper()
        description = self._pick_description(cna, rejected=state == "REJECTED")
        published = self._parse_date(cve_id, metadata.get("datePublished"))
        last_modified = self._parse_date(cve_id, metadata.get("dateUpdated")) or published

        fields = {
            "id": cve_id,
            "description": description,
            "status": self._status(state, cna, description),
            "published": published,
            "last_modified": last_modified,
            "references": self._references(cna, adp),
            "products": self._products(cna),
        }
        fields.update(self._cvss(cve_id, [cna] + [c for c in adp if isinstance(c, dict)]))
        return fields

    def apply_enrichment(self, record: CveRecord, enrichment: Enrichment) -> CveRecord:
        return record.model_copy(update={
            "epss_score": enrichment.epss_score,
            "kev": bool(enrichment.kev),
            "exploit_maturity": enrichment.exploit_maturity,
        })

    @staticmethod
    def _pick_description(cna: dict, rejected: bool = False) -> str:
        entries = cna.get("rejectedReasons") if rejected else None
        entries = entries or cna.get("descriptions") or []
        if not isinstance(entries, list):
            return ""
        entries = [e for e in entries if isinstance(e, dict) and e.get("value")]
        for entry in entries:
            if str(entry.get("lang", "")).lower().startswith("en"):
                return str(entry["value"]).strip()
        return str(entries[0]["value"]).strip() if entries else ""

    @staticmethod
    def _status(state: str, cna: dict, description: str) -> str:
        if state == "REJECTED":
            return "REJECTED"
        tags = [str(t).lower() for t in (cna.get("tags") or []) if t]
        if "disputed" in tags or description.upper().startswith("** DISPUTED"):
            return "DISPUTED"
        return "PUBLISHED"

    @staticmethod
    def _parse_date(cve_id: str, value) -> datetime | None:
        """Parse an ISO-8601 timestamp into naive UTC."""
        if not value:
            return None
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise CveParseError(cve_id, f"invalid timestamp {value!r}")
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed

    @staticmethod
    def _cvss(cve_id: str, containers: list[dict]) -> dict:
        """Collect CVSS metrics across CNA and ADP containers.

        Several containers may score the same version; the highest score wins.
        The primary triple comes from the newest version that has a score.
        """
        best: dict[str, tuple[float, str | None]] = {}
        for container in containers:
            metrics = container.get("metrics") or []
            if not isinstance(metrics, list):
                continue
            for metric in metrics:
                if not isinstance(metric, dict):
                    continue
                for key, prefix, _ in CVSS_VERSIONS:
                    cvss = metric.get(key)
                    if not isinstance(cvss, dict) or cvss.get("baseScore") is None:
                        continue
                    try:
                        score = float(cvss["baseScore"])
                    except (TypeError, ValueError):
                        raise CveParseError(cve_id, f"invalid {key} baseScore {cvss['baseScore']!r}")
                    if not 0 <= score <= 10:
                        raise CveParseError(cve_id, f"{key} baseScore out of range: {score}")
                    if prefix not in best or score > best[prefix][0]:
                        vector = cvss.get("vectorString")
                        best[prefix] = (score, str(vector) if vector else None)

        fields = {}
        for _, prefix, version in CVSS_VERSIONS:
            if prefix not in best:
                continue
            score, vector = best[prefix]
            fields[f"{prefix}_score"] = score
            fields[f"{prefix}_severity"] = severity_for_score(score)
            fields[f"{prefix}_vector"] = vector
            if "cvss_version" not in fields:
                fields.update({
                    "cvss_score": score,
                    "cvss_severity": severity_for_score(score),
                    "cvss_version": version,
                    "cvss_vector": vector,
                })
        return fields

    @staticmethod
    def _references(cna: dict, adp: list) -> list[str]:
        urls = set()
        for container in [cna] + adp:
            if not isinstance(container, dict):
                continue
            for ref in container.get("references") or []:
                if isinstance(ref, dict) and ref.get("url"):
                    urls.add(str(ref["url"]).strip())
        return sorted(urls)

    @staticmethod
    def _products(cna: dict) -> list[AffectedProduct]:
        pairs = set()
        for affected in cna.get("affected") or []:
            if not isinstance(affected, dict):
                continue
            vendor = normalize_name(affected.get("vendor"))
            product = normalize_name(affected.get("product"))
            if not vendor or not product or "n/a" in (vendor, product):
                continue
            pairs.add((vendor, product))
        return [AffectedProduct(vendor=v, product=p) for v, p in sorted(pairs)]
