from harvester.normalize import TRUNCATION_MARKER, extract_image_urls, html_to_text


def test_strips_chrome_and_scripts():
    html = """
    <html><head><style>p { color: red }</style><script>track()</script></head>
    <body>
      <header>Site header</header>
      <nav><a href="/wines">Wines</a></nav>
      <div class="cookie-consent">We use cookies</div>
      <div id="newsletter-popup">Sign up!</div>
      <p>Our estate Cabernet.</p>
      <footer>Copyright</footer>
    </body></html>
    """
    text = html_to_text(html)
    assert text == "Our estate Cabernet."


def test_page_level_consent_classes_keep_content():
    html = """
    <html class="modal-open"><body class="has-cookie-banner">
      <main id="overlay-root">
        <section class="consent-banner">Accept all cookies?</section>
        <p>Estate Cabernet, $85.</p>
      </main>
    </body></html>
    """
    assert html_to_text(html) == "Estate Cabernet, $85."


def test_structure_becomes_lines():
    html = """
    <h2>Current Releases</h2>
    <ul><li>2021 Cabernet</li><li>2022 Chardonnay</li></ul>
    <p>Line one<br>Line two</p>
    <p>See <a href="https://shop.example.com">our shop</a></p>
    """
    text = html_to_text(html)
    assert "## Current Releases" in text
    assert "- 2021 Cabernet\n" in text
    assert "- 2022 Chardonnay" in text
    assert "Line one\nLine two" in text
    assert "our shop (https://shop.example.com)" in text


def test_entities_decoded_and_whitespace_collapsed():
    text = html_to_text("<p>Ros&eacute;&nbsp;&amp;   Brut</p>\n\n\n\n<p>Next</p>")
    assert text == "Rosé & Brut\n\nNext"


def test_truncates_with_marker():
    text = html_to_text("<p>" + "x" * 500 + "</p>", max_chars=100)
    assert text == "x" * 100 + TRUNCATION_MARKER


def test_image_urls_filtered_and_resolved():
    html = """
    <img src="/img/vineyard.jpg" width="1200">
    <img src="https://cdn.example.com/cellar.png">
    <img src="/img/icon.png" width="32">
    <img src="data:image/png;base64,AAAA">
    <img src="https://tracker.example.com/pixel.gif">
    <img src="/logo.svg">
    <img src="/img/vineyard.jpg">
    """
    assert extract_image_urls(html, "https://winery.example.com/about") == [
        "https://winery.example.com/img/vineyard.jpg",
        "https://cdn.example.com/cellar.png",
    ]
