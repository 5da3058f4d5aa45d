"""Document OCR review pipeline.

Ingests scanned invoices, invoice payments and sale receipts, runs OCR
with Tesseract or Azure Document Intelligence, scores image quality and
per-field confidence, flags probable duplicates, and routes each
document through manual review to approval, where exactly one financial
record is created for it.
"""
