from advisory_fetcher.workflows import advisory_utils as utils


def test_normalize_url_keeps_path_case() -> None:
    url = "HTTPS://Security.PaloAltoNetworks.com:443/CVE-2024-3400#details"
    assert utils.normalize_url(url) == "https://security.paloaltonetworks.com/CVE-2024-3400"


def test_split_url_cell_handles_mixed_delimiters() -> None:
    cell = " https://a.example/1 ;https://b.example/2 | https://c.example/3\n"
    assert utils.split_url_cell(cell) == [
        "https://a.example/1",
        "https://b.example/2",
        "https://c.example/3",
    ]
    assert utils.split_url_cell(None) == []


def test_suspect_content_detection() -> None:
    assert utils.is_suspect_content("<noscript>Please enable JavaScript</noscript>", 10)
    assert utils.is_suspect_content("<p>Loading</p>", 512)
    assert not utils.is_suspect_content("<p>CVE-2024-3400 advisory</p>", 512)


def test_domain_of_and_validity() -> None:
    assert utils.domain_of("https://MSRC.microsoft.com/update-guide") == "msrc.microsoft.com"
    assert utils.is_valid_url("http://vendor.example/a")
    assert not utils.is_valid_url("vendor.example/a")


def test_kb_marker_needs_an_article_number() -> None:
    assert not utils.has_advisory_markers("<kbd>Ctrl</kbd><script>var kbLayout=1;</script>")
    assert utils.has_advisory_markers("<p>Install KB5034765</p>")
    assert utils.has_advisory_markers("<p>see kb 5034765</p>")
    assert utils.is_suspect_content("<kbd>Enter</kbd>", 512)
