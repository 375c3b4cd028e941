import random
import string

from django.utils import timezone

ALNUM = string.ascii_uppercase + string.digits


def generate_order_number(prefix="LS"):
    ts = timezone.now().strftime("%y%m%d%H%M%S")
    rand = "".join(random.choices(ALNUM, k=6))
    return f"{prefix}{ts}{rand}"
