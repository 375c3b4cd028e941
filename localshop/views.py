from django.shortcuts import render

from catalog.models import Category, Product


def home_view(request):
    categories = Category.objects.filter(is_active=True).order_by("position", "name")
    products = Product.objects.filter(is_active=True).select_related("category").order_by("-created_at")[:12]
    context = {
        "categories": categories,
        "featured_products": products,
    }
    return render(request, "home.html", context)


def error_404_view(request, exception):
    return render(request, "404.html", status=404)
