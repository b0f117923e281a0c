import asyncio

from crawl_server import CrawlServer, frame
from firecrawl_client.client import FirecrawlClient
from firecrawl_client.errors import FirecrawlError, JobError
from firecrawl_client.models import ClientConfig, CrawlParams, ExtractParams


def document_received(document):
    print(f"Document: {document}")


async def crawl_finished(documents):
    print(f"Watch finished with {len(documents)} documents")


async def main():
    PORT = 8000
    server = CrawlServer(
        polls_until_complete=3,
        pages=[[{"markdown": "# Home"}], [{"markdown": "# About"}]],
    )
    server.stream_frames = [
        frame("document", {"markdown": "# Home"}),
        frame("document", {"markdown": "# About"}),
        frame("done", None),
    ]
    await server.start(port=PORT)
    print(f"Server started on http://localhost:{PORT}")

    config = ClientConfig(api_url=f"http://localhost:{PORT}", api_key="fc-test")

    async with FirecrawlClient(config=config) as app:
        try:
            status = await app.crawl_url(
                "https://example.com", CrawlParams(limit=10), poll_interval=0.5
            )
            print(f"Crawl {status.status.value}: {len(status.data)} documents")
        except JobError as e:
            print(f"Crawl job failed: {e.message}")
        except FirecrawlError as e:
            print(f"Error occurred: {e}")

        watcher = await app.crawl_url_and_watch("https://example.com")
        watcher.add_listener("document", document_received)
        watcher.add_listener("done", crawl_finished)
        await watcher.connect()
        await watcher.wait_closed()

        result = await app.extract(
            ExtractParams(urls=["https://example.com"], prompt="Get the page title"),
            poll_interval=0.5,
        )
        print(f"Extracted: {result.data}")

    await server.stop()


if __name__ == "__main__":
    asyncio.run(main())
