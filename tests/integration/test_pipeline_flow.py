import pytest
import asyncio
import io
from PIL import Image

from image_service.errors import Forbidden, NotFound
from image_service.services import IngestionCoordinator, RetrievalCoordinator, TransformCoordinator


@pytest.mark.integration
class TestPipelineFlow:
    """Upload, transform and retrieve across two users against a real catalog."""

    @pytest.fixture(autouse=True)
    def setup(self, catalog, storage, processor):
        self.storage = storage
        self.ingestion = IngestionCoordinator(catalog, storage, ["image/png", "image/jpeg"], 10 * 1024 * 1024)
        self.transformer = TransformCoordinator(catalog, storage, processor, "https://img.example.com")
        self.retrieval = RetrievalCoordinator(catalog, "https://img.example.com")

    def upload(self, owner_id, content, content_type="image/jpeg"):
        ticket = asyncio.run(self.ingestion.begin_upload(owner_id, content_type, len(content)))
        # the client PUTs to the presigned url
        self.storage.objects[ticket.storage_key] = content
        return ticket

    def test_owner_scenario(self, test_jpeg_file):
        owner_a, owner_b = 1, 2
        ticket = self.upload(owner_a, test_jpeg_file['content'])
        spec = {"resize": {"width": 100, "height": 100}, "format": "webp"}

        with pytest.raises(Forbidden):
            asyncio.run(self.transformer.transform(owner_b, ticket.image_id, spec))

        result = asyncio.run(self.transformer.transform(owner_a, ticket.image_id, spec))
        assert result.mime_type == "image/webp"

        stored_key = result.transformed_image_url.replace("https://img.example.com/", "")
        derived = Image.open(io.BytesIO(self.storage.objects[stored_key]))
        assert derived.format == "WEBP"
        assert derived.size == (100, 100)

        view = asyncio.run(self.retrieval.get_one(owner_a, result.id))
        assert view.id == result.id
        assert view.original_image_url == result.original_image_url
        assert view.size_in_bytes == result.size_in_bytes

        with pytest.raises(NotFound):
            asyncio.run(self.retrieval.get_one(owner_b, result.id))

        assert asyncio.run(self.retrieval.list_page(owner_b, 1, 10)).pagination.total == 0

    @pytest.mark.slow
    def test_many_variants_of_one_original(self, test_jpeg_file):
        ticket = self.upload(1, test_jpeg_file['content'])
        specs = [
            {"format": "png"},
            {"format": "jpeg", "quality": 60},
            {"grayscale": True},
            {"rotate": 30, "format": "png"},
            {"crop": {"width": 100, "height": 100, "x": 10, "y": 10}, "resize": {"width": 50, "fit": "inside"}},
        ]

        ids = [asyncio.run(self.transformer.transform(1, ticket.image_id, spec)).id for spec in specs]

        page = asyncio.run(self.retrieval.list_page(1, 1, 100))
        assert [item.id for item in page.items] == list(reversed(ids))
        assert {item.mime_type for item in page.items} == {"image/png", "image/jpeg", "image/webp"}
