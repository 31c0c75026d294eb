"""
Order Service — 注文ライフサイクル管理

注文ステータスの状態機械(財務 / フルフィルメントの2軸)と、
注文作成 Saga(在庫引き当て → 送料 → 税 → 決済インテント)を提供する。
"""
