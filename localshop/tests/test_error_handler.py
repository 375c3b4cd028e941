from django.test import TestCase, override_settings

from catalog.models import Category, Product


@override_settings(DEBUG=False)
class ErrorHandlerTests(TestCase):
    def test_custom_404_template_used(self):
        response = self.client.get('/this-url-does-not-exist/')
        self.assertEqual(response.status_code, 404)
        self.assertTemplateUsed(response, '404.html')


class HomeViewTests(TestCase):
    def test_lists_only_active_products(self):
        cat = Category.objects.create(name="Laptop", slug="laptop")
        Product.objects.create(category=cat, name="ThinkPad X1", slug="thinkpad-x1", price=30000000)
        Product.objects.create(category=cat, name="Old model", slug="old-model", price=1000000, is_active=False)

        response = self.client.get('/')

        self.assertEqual(response.status_code, 200)
        names = [p.name for p in response.context["featured_products"]]
        self.assertEqual(names, ["ThinkPad X1"])
