import qrcode
import qrcode.image.svg


def make_verify_qr_svg_bytes(payload: str) -> bytes:
    img = qrcode.make(payload, image_factory=qrcode.image.svg.SvgImage)
    return img.to_string()  # bytes, no args
