import pytest

from app.errors import BackendError, InvalidPathError, NotFoundError
from app.services.content_resolver import decode_request_path, normalize_path
from conftest import MODIFIED, collect


def test_decode_request_path():
    """Leading slash is dropped and the path is percent-decoded once."""
    assert decode_request_path("/hello%20world.txt") == "hello world.txt"
    assert decode_request_path("/a%252Fb") == "a%2Fb"
    assert decode_request_path("/") == ""
    # Not valid UTF-8 once decoded, used verbatim
    assert decode_request_path("/%ff.txt") == "%ff.txt"


def test_normalize_path():
    assert normalize_path("a/./b//c") == "a/b/c"
    assert normalize_path("a/b/../c") == "a/c"
    assert normalize_path("") == ""
    with pytest.raises(InvalidPathError):
        normalize_path("../secret")
    with pytest.raises(InvalidPathError):
        normalize_path("a/../../etc/passwd")


@pytest.mark.asyncio
async def test_resolve_exact_file(storage, make_resolver):
    """An existing file is returned with negotiated headers."""
    storage.add("css/site.css", b"body{}", content_type="text/css")
    resolver = make_resolver()

    response = await resolver.resolve("/css/site.css")

    assert response.body == b"body{}"
    assert response.header("Content-Type") == "text/css"
    assert response.header("Cache-Control") == "public, max-age=31536000, immutable"
    assert response.header("ETag") == f'W/"{6:x}-{int(MODIFIED.timestamp()):x}"'


@pytest.mark.asyncio
async def test_html_suffix_fallback(storage, make_resolver):
    """/about falls back to about.html and matches a direct request for it."""
    storage.add("about.html", b"<h1>About</h1>")
    resolver = make_resolver(fallback_html_suffix_enabled=True)

    fallback = await resolver.resolve("/about")
    direct = await resolver.resolve("/about.html")

    assert fallback.body == direct.body == b"<h1>About</h1>"
    assert fallback.headers == direct.headers


@pytest.mark.asyncio
async def test_index_fallback(storage, make_resolver):
    """Unknown paths serve the root index file when the index fallback is on."""
    storage.add("index.html", b"<app></app>")
    resolver = make_resolver(fallback_index_enabled=True)

    response = await resolver.resolve("/some/client/route")

    assert response.body == b"<app></app>"
    assert response.header("Content-Type") == "text/html"
    assert response.header("Cache-Control") == "no-cache"


@pytest.mark.asyncio
async def test_not_found_names_requested_path(storage, make_resolver):
    """When every candidate is missing the error names the requested path."""
    resolver = make_resolver(fallback_html_suffix_enabled=True, fallback_index_enabled=True)

    with pytest.raises(NotFoundError) as exc_info:
        await resolver.resolve("/foo")

    assert exc_info.value.path == "/foo"
    assert str(exc_info.value) == "File not found: /foo"
    assert ("stat", "foo") in storage.calls
    assert ("stat", "foo.html") in storage.calls
    assert ("stat", "index.html") in storage.calls


@pytest.mark.asyncio
async def test_backend_error_stops_fallback_chain(storage, make_resolver, backend_error):
    """A failure other than not found is raised without trying later candidates."""
    storage.add("foo.html", b"<p>foo</p>")
    storage.fail_on("foo", backend_error)
    resolver = make_resolver(fallback_html_suffix_enabled=True)

    with pytest.raises(BackendError):
        await resolver.resolve("/foo")

    assert storage.calls == [("stat", "foo")]


@pytest.mark.asyncio
async def test_traversal_rejected_before_backend(storage, make_resolver):
    """Paths escaping the root fail without touching storage."""
    resolver = make_resolver()

    with pytest.raises(InvalidPathError):
        await resolver.resolve("/../secret.txt")
    with pytest.raises(InvalidPathError):
        await resolver.resolve("/assets/..%2f..%2fetc/passwd")

    assert storage.calls == []


@pytest.mark.asyncio
async def test_percent_encoded_names(storage, make_resolver):
    storage.add("hello world.txt", b"hi")
    storage.add("%ff.txt", b"raw")
    resolver = make_resolver()

    assert (await resolver.resolve("/hello%20world.txt")).body == b"hi"
    assert (await resolver.resolve("/%ff.txt")).body == b"raw"


@pytest.mark.asyncio
async def test_directory_serves_index(storage, make_resolver):
    """A directory without autoindex is retargeted to its index file."""
    storage.add("docs/index.html", b"<h1>Docs</h1>")
    resolver = make_resolver()

    response = await resolver.resolve("/docs/")

    assert response.body == b"<h1>Docs</h1>"
    assert ("stat", "docs/index.html") in storage.calls


@pytest.mark.asyncio
async def test_directory_without_index_is_not_found(storage, make_resolver):
    storage.add("docs/readme.txt", b"read me")
    resolver = make_resolver(index_filename="")

    with pytest.raises(NotFoundError):
        await resolver.resolve("/docs")


@pytest.mark.asyncio
async def test_directory_missing_index_is_not_found(storage, make_resolver):
    storage.add("docs/readme.txt", b"read me")
    resolver = make_resolver()

    with pytest.raises(NotFoundError) as exc_info:
        await resolver.resolve("/docs")
    assert exc_info.value.path == "/docs"


@pytest.mark.asyncio
async def test_autoindex_listing(storage, make_resolver):
    """Autoindex renders the directory and the page is never cached."""
    storage.add("docs/guide.txt", b"guide")
    storage.add("docs/api/index.html", b"api")
    storage.add("docs/.hidden", b"secret")
    resolver = make_resolver(autoindex_enabled=True)

    response = await resolver.resolve("/docs")
    page = response.body.decode()

    assert response.header("Content-Type") == "text/html"
    assert response.header("Cache-Control") == "no-cache"
    assert 'href="./api/"' in page
    assert 'href="./guide.txt"' in page
    assert ".hidden" not in page
    assert page.index("./api/") < page.index("./guide.txt")
    assert len(resolver.cache) == 0


@pytest.mark.asyncio
async def test_cache_hit_skips_backend(storage, make_resolver):
    """A cached small file is served without calling the backend again."""
    storage.add("app.js", b"console.log(1)")
    resolver = make_resolver()

    first = await resolver.resolve("/app.js")
    calls = len(storage.calls)
    second = await resolver.resolve("/app.js")

    assert first == second
    assert len(storage.calls) == calls
    assert resolver.cache.get("app.js") == first


@pytest.mark.asyncio
async def test_cache_key_is_retargeted_path(storage, make_resolver):
    storage.add("docs/index.txt", b"plain index")
    resolver = make_resolver(index_filename="index.txt")

    await resolver.resolve("/docs")

    assert resolver.cache.get("docs/index.txt") is not None
    assert resolver.cache.get("docs") is None


@pytest.mark.asyncio
async def test_html_is_never_cached(storage, make_resolver):
    storage.add("index.html", b"<p>home</p>")
    resolver = make_resolver()

    await resolver.resolve("/index.html")
    await resolver.resolve("/index.html")

    assert storage.count("read") == 2
    assert len(resolver.cache) == 0


@pytest.mark.asyncio
async def test_disabled_cache_always_reads(storage, make_resolver):
    storage.add("app.js", b"1")
    resolver = make_resolver(cache_capacity=0)

    await resolver.resolve("/app.js")
    await resolver.resolve("/app.js")

    assert storage.count("read") == 2


@pytest.mark.asyncio
async def test_large_file_is_streamed(storage, make_resolver):
    """Bodies at or above the threshold are streamed and never cached."""
    content = b"0123456789" * 10
    storage.add("video.bin", content)
    resolver = make_resolver(small_body_threshold_bytes=len(content))

    response = await resolver.resolve("/video.bin")

    assert response.body is None
    assert storage.count("read") == 0
    assert await collect(response.stream) == content
    assert storage.count("open_stream") == 1
    assert len(resolver.cache) == 0


@pytest.mark.asyncio
async def test_large_html_is_buffered(storage, make_resolver):
    """HTML is always read whole so substitutions can be applied."""
    content = b"<p>" + b"x" * 100 + b"</p>"
    storage.add("big.html", content)
    resolver = make_resolver(small_body_threshold_bytes=10)

    response = await resolver.resolve("/big.html")

    assert response.body == content
    assert storage.count("open_stream") == 0


@pytest.mark.asyncio
async def test_html_substitutions_applied_in_order(storage, make_resolver):
    storage.add("index.html", b"<p>A</p>")
    resolver = make_resolver(html_substitutions=((b"A", b"B"), (b"B", b"C")))

    response = await resolver.resolve("/index.html")

    assert response.body == b"<p>C</p>"


@pytest.mark.asyncio
async def test_html_substitutions_skip_other_types(storage, make_resolver):
    storage.add("data.txt", b"A")
    resolver = make_resolver(html_substitutions=((b"A", b"B"),))

    response = await resolver.resolve("/data.txt")

    assert response.body == b"A"


@pytest.mark.asyncio
async def test_resolve_is_idempotent(storage, make_resolver):
    storage.add("page.html", b"<p>same</p>")
    storage.add("logo.svg", b"<svg/>")
    resolver = make_resolver()

    for path in ("/page.html", "/logo.svg"):
        first = await resolver.resolve(path)
        second = await resolver.resolve(path)
        assert first.body == second.body
        assert first.headers == second.headers
