import json

from advisory_fetcher.workflows import extractors
from advisory_fetcher.workflows.extractors import (
    ExtractorRegistry,
    GenericExtractor,
    find_affected_versions,
    find_patch_id,
    select_extractor,
)
from advisory_fetcher.workflows.models import RemediationRecord

MSRC_URL = "https://msrc.microsoft.com/update-guide/vulnerability/CVE-2024-21412"
GHSA_URL = "https://github.com/advisories/GHSA-jfh8-c2jp-5v3q"


def test_select_extractor_by_url_shape() -> None:
    assert select_extractor(MSRC_URL).name == "msrc"
    assert select_extractor(GHSA_URL).name == "github_advisory"
    assert select_extractor("https://support.microsoft.com/help/5034765").name == "microsoft_support"
    assert select_extractor("https://access.redhat.com/errata/RHSA-2024:0897").name == "redhat"
    assert select_extractor("https://ubuntu.com/security/notices/USN-6649-1").name == "ubuntu"
    assert select_extractor("https://vendor.example/psirt/1").name == "generic"


def test_find_patch_id_priority_and_normalization() -> None:
    assert find_patch_id("See KB 5034765 for CVE-2024-21412") == "KB5034765"
    assert find_patch_id("advisory ghsa-JFH8-c2jp-5v3q") == "GHSA-jfh8-c2jp-5v3q"
    assert find_patch_id("errata rhsa-2024:0897") == "RHSA-2024:0897"
    assert find_patch_id("no identifiers here") is None


def test_find_affected_versions() -> None:
    text = "Versions prior to 2.4.58 are affected. This issue is fixed in version 2.4.58."
    assert find_affected_versions(text) == "affected 2.4.58; fixed 2.4.58"


def test_msrc_api_payload() -> None:
    payload = {
        "value": [
            {
                "product": "Windows 11 Version 23H2 for x64-based Systems",
                "fixedBuildNumber": "10.0.22631.3155",
                "kbArticles": [
                    {
                        "articleName": "5034765",
                        "downloadName": "Security Update",
                        "downloadUrl": "https://catalog.update.microsoft.com/v7/site/Search.aspx?q=KB5034765",
                    }
                ],
            },
            {
                "product": "Windows Server 2022",
                "fixedBuildNumber": "10.0.20348.2322",
                "kbArticles": [{"articleName": "5034770", "downloadName": "Security Update"}],
            },
        ]
    }

    record = ExtractorRegistry().extract(json.dumps(payload), MSRC_URL)

    assert record.patch_id == "KB5034765"
    assert "fixed build 10.0.22631.3155" in record.affected_versions
    assert record.download_links == frozenset(
        {
            "https://catalog.update.microsoft.com/v7/site/Search.aspx?q=KB5034765",
            "https://catalog.update.microsoft.com/v7/site/Search.aspx?q=KB5034770",
        }
    )
    assert record.remediation_text.startswith("Security Update KB5034765")
    assert record.quality_score == 100


def test_github_advisory_api_payload() -> None:
    payload = {
        "ghsa_id": "GHSA-jfh8-c2jp-5v3q",
        "vulnerabilities": [
            {
                "package": {"ecosystem": "maven", "name": "org.apache.logging.log4j:log4j-core"},
                "vulnerable_version_range": ">= 2.0-beta9, < 2.15.0",
                "first_patched_version": "2.15.0",
            }
        ],
        "references": [
            "https://github.com/apache/logging-log4j2/pull/608",
            "https://nvd.nist.gov/vuln/detail/CVE-2021-44228",
        ],
    }

    record = ExtractorRegistry().extract(json.dumps(payload), GHSA_URL)

    assert record.patch_id == "GHSA-jfh8-c2jp-5v3q"
    assert "< 2.15.0" in record.affected_versions
    assert "Upgrade org.apache.logging.log4j:log4j-core to 2.15.0" in record.remediation_text
    assert "https://github.com/apache/logging-log4j2/pull/608" in record.download_links
    assert "https://nvd.nist.gov/vuln/detail/CVE-2021-44228" not in record.download_links


def test_generic_extractor_html() -> None:
    html = """
    <html><head><title>PSIRT advisory</title></head><body>
      <h1>Security advisory for CVE-2024-1111</h1>
      <p>Versions prior to 3.2.1 are vulnerable.</p>
      <h2>Remediation</h2>
      <p>Upgrade to version 3.2.1 or later.</p>
      <ul><li><a href="/downloads/fw-3.2.1.zip">Firmware 3.2.1</a></li>
          <li><a href="https://vendor.example/docs">Docs</a></li></ul>
    </body></html>
    """

    record = GenericExtractor().extract(html, "https://vendor.example/psirt/1")

    assert record.patch_id == "CVE-2024-1111"
    assert "3.2.1" in record.affected_versions
    assert "Upgrade to version 3.2.1" in record.remediation_text
    assert record.download_links == frozenset({"https://vendor.example/downloads/fw-3.2.1.zip"})


def test_patch_id_falls_back_to_url() -> None:
    record = ExtractorRegistry().extract("<html><body><p>Nothing useful.</p></body></html>", "https://access.redhat.com/errata/RHSA-2024:0897")

    assert record.patch_id == "RHSA-2024:0897"


def test_failing_extractor_degrades_to_generic(monkeypatch) -> None:
    def boom(self, content, url):
        raise ValueError("markup changed")

    monkeypatch.setattr(extractors.UbuntuExtractor, "extract", boom)
    url = "https://ubuntu.com/security/notices/USN-6649-1"

    record = ExtractorRegistry().extract("<p>Update to version 1.2.3 to fix this.</p>", url)

    assert record.patch_id == "USN-6649-1"
    assert record.source_used == "ubuntu+generic"


def test_record_links_are_trimmed_and_unique() -> None:
    record = RemediationRecord(
        source_used="generic",
        download_links=frozenset({" https://a.example/x.msu ", "https://a.example/x.msu", "", "  "}),
    )

    assert record.download_links == frozenset({"https://a.example/x.msu"})


def test_quality_score_penalizes_suspect_content() -> None:
    record = RemediationRecord(source_used="generic", patch_id="KB5034765")

    assert extractors.quality_score(record) == 25
    assert extractors.quality_score(record, suspect=True) == 10


def test_registry_selection_matches_select_extractor() -> None:
    registry = ExtractorRegistry()
    for url in (MSRC_URL, GHSA_URL, "https://vendor.example/psirt/1"):
        assert registry.select(url) is select_extractor(url)

    custom_generic = GenericExtractor()
    narrowed = ExtractorRegistry(extractors=(), generic=custom_generic)
    assert narrowed.select(MSRC_URL) is custom_generic
