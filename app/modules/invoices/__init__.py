"""
Módulo de Facturación (Invoices)

- Facturas a partir de una cuenta completa, de cargos seleccionados o del
  saldo de un grupo de facturación
- Numeración INV-YYYY-NNNN por organización y año (invoice_sequences)
- Envío por email vía Celery y vista pública sin autenticación (cacheada)
- Estados: draft -> sent -> paid, o void

Tablas principales:
- invoices
- invoice_line_items: copia de los cargos facturados
- invoice_sequences
"""
